"""Push-event feed for operators and dashboards.

Events are hints to re-fetch authoritative state, not the source of truth.
Delivery is at-least-once and best-effort: ``publish`` never raises.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ridekeeper.storage.event_store import EventLogProtocol

__all__ = ["EventType", "FeedEvent", "EventFeed"]

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    RISK_RECALCULATED = "RISK_RECALCULATED"
    OFFER_SENT = "OFFER_SENT"
    REMINDER_SENT = "REMINDER_SENT"
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    MESSAGE_STATUS_CHANGED = "MESSAGE_STATUS_CHANGED"
    RIDE_BOOKED = "RIDE_BOOKED"
    RIDE_STATUS_CHANGED = "RIDE_STATUS_CHANGED"
    APPOINTMENT_STATUS_CHANGED = "APPOINTMENT_STATUS_CHANGED"
    SWEEP_TRIGGERED = "SWEEP_TRIGGERED"


@dataclass(frozen=True)
class FeedEvent:
    event_type: EventType
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "emitted_at": self.emitted_at.isoformat(),
        }


class EventFeed:
    """Fans events out to subscriber queues and appends them to the log."""

    def __init__(self, log: EventLogProtocol | None = None, queue_size: int = 256) -> None:
        self._log = log
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[FeedEvent]] = set()

    def subscribe(self) -> asyncio.Queue[FeedEvent]:
        queue: asyncio.Queue[FeedEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[FeedEvent]) -> None:
        self._subscribers.discard(queue)

    async def publish(
        self, event_type: EventType, entity_id: str, payload: dict[str, Any] | None = None
    ) -> FeedEvent:
        event = FeedEvent(event_type=event_type, entity_id=entity_id, payload=payload or {})

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Feed subscriber queue full, dropping %s", event_type)

        if self._log is not None:
            try:
                await asyncio.to_thread(
                    self._log.append,
                    entity_id,
                    event_type.value,
                    event.payload,
                )
            except Exception:
                logger.warning("Event log append failed for %s", event_type, exc_info=True)

        return event

    def recent(
        self,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        if self._log is None:
            return []
        return self._log.recent(entity_id=entity_id, event_type=event_type, limit=limit)
