"""Observability events emitted by the Scheduler and Step Runner.

Delivery is synchronous and in-process: subscribers run inside the step that
emitted the event. A failing subscriber is logged and never affects the
migration.

Example:
    >>> bus = EventBus()
    >>> bus.subscribe(EventType.THROTTLED, lambda event: metrics.incr("throttled"))
    >>> bus.subscribe("*", audit_log.append)
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from migration_spine.logging import get_logger
from migration_spine.models import MigrationRecord, utc_now

logger = get_logger(__name__)


class EventType(str, Enum):
    STARTED = "started"
    RUN = "run"
    COMPLETED = "completed"
    THROTTLED = "throttled"
    RETRIED = "retried"
    FAILED = "failed"


@dataclass(frozen=True)
class MigrationEvent:
    event_type: EventType
    record: MigrationRecord
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "migration_id": self.record.id,
            "migration_name": self.record.migration_name,
            "kind": self.record.kind.value,
            "shard": self.record.shard,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[MigrationEvent], None]


@dataclass
class Subscription:
    id: str
    pattern: str
    handler: EventHandler


class EventBus:
    """Synchronous publish/subscribe for migration events."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> str:
        """Subscribe to one event type, or ``"*"`` for all.

        Returns:
            Subscription ID
        """
        pattern = event_type.value if isinstance(event_type, EventType) else event_type
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscriptions[sub_id] = Subscription(sub_id, pattern, handler)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def emit(
        self,
        event_type: EventType,
        record: MigrationRecord,
        **payload: Any,
    ) -> MigrationEvent:
        event = MigrationEvent(event_type=event_type, record=record, payload=payload)
        logger.info(
            f"migration.{event_type.value}",
            migration_id=record.id,
            migration_name=record.migration_name,
            kind=record.kind.value,
            shard=record.shard,
            **payload,
        )

        with self._lock:
            handlers = [
                sub
                for sub in self._subscriptions.values()
                if sub.pattern in ("*", event_type.value)
            ]

        for sub in handlers:
            try:
                sub.handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub.id,
                    event_type=event_type.value,
                    error=str(e),
                )
        return event


__all__ = ["EventType", "MigrationEvent", "EventBus", "Subscription"]
