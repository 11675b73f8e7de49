"""Tests for the EventBus."""

from __future__ import annotations

from migration_spine.events import EventBus, EventType, MigrationEvent
from migration_spine.models import DataMigrationRecord


def _record() -> DataMigrationRecord:
    return DataMigrationRecord(migration_name="CollectNumbers", id=4, shard="one")


class TestEventBus:
    def test_subscribe_to_type(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.THROTTLED, received.append)
        bus.emit(EventType.THROTTLED, _record())
        bus.emit(EventType.RUN, _record())
        assert [e.event_type for e in received] == [EventType.THROTTLED]

    def test_wildcard(self):
        bus = EventBus()
        received = []
        bus.subscribe("*", received.append)
        for event_type in EventType:
            bus.emit(event_type, _record())
        assert len(received) == len(EventType)

    def test_payload(self):
        bus = EventBus()
        event = bus.emit(EventType.RUN, _record(), cursor=10, ticks=2)
        assert isinstance(event, MigrationEvent)
        assert event.payload == {"cursor": 10, "ticks": 2}

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        sub_id = bus.subscribe(EventType.RUN, received.append)
        assert bus.subscription_count == 1
        bus.unsubscribe(sub_id)
        bus.emit(EventType.RUN, _record())
        assert received == []
        assert bus.subscription_count == 0

    def test_failing_handler_isolated(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("metrics backend down")

        bus.subscribe(EventType.COMPLETED, broken)
        bus.subscribe(EventType.COMPLETED, received.append)
        bus.emit(EventType.COMPLETED, _record())
        assert len(received) == 1


class TestMigrationEvent:
    def test_to_dict(self):
        event = MigrationEvent(EventType.FAILED, _record(), {"error_class": "RuntimeError"})
        data = event.to_dict()
        assert data["event_type"] == "failed"
        assert data["migration_id"] == 4
        assert data["kind"] == "data"
        assert data["shard"] == "one"
        assert data["payload"] == {"error_class": "RuntimeError"}
