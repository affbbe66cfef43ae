"""Durable log of everything the live feed publishes.

The feed works without a log; with one, ``GET /events`` can replay the
recent history after a restart (PostgreSQL) or for the life of the
process (in memory).
"""

from __future__ import annotations

import json
import uuid
from collections import deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    import psycopg

__all__ = ["EventLogProtocol", "InMemoryEventLog", "PostgresEventLog"]

_COLUMNS = ("event_id", "entity_id", "event_type", "payload", "created_at")


class EventLogProtocol(Protocol):
    def append(
        self,
        entity_id: str,
        event_type: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> str:
        """Store one event and return its id.

        Appending twice with the same ``idempotency_key`` keeps the first
        event and returns its id.
        """
        ...

    def recent(
        self,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Newest first."""
        ...


def _matches(event: dict[str, Any], entity_id: str | None, event_type: str | None) -> bool:
    if entity_id and event["entity_id"] != entity_id:
        return False
    return not (event_type and event["event_type"] != event_type)


# ── In memory ────────────────────────────────────────────────────────


class InMemoryEventLog:
    """Keeps the newest ``max_events`` events."""

    def __init__(self, max_events: int = 5000) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)
        self._ids_by_key: dict[str, str] = {}

    def append(
        self,
        entity_id: str,
        event_type: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> str:
        if idempotency_key is not None and idempotency_key in self._ids_by_key:
            return self._ids_by_key[idempotency_key]

        event = dict(
            zip(
                _COLUMNS,
                (uuid.uuid4().hex, entity_id, event_type, payload, datetime.now(UTC).isoformat()),
                strict=True,
            )
        )
        self._events.append(event)
        if idempotency_key is not None:
            self._ids_by_key[idempotency_key] = event["event_id"]
        return event["event_id"]

    def recent(
        self,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for event in reversed(self._events):
            if len(out) >= limit:
                break
            if _matches(event, entity_id, event_type):
                out.append(event)
        return out


# ── PostgreSQL ───────────────────────────────────────────────────────


class PostgresEventLog:
    """Rows in ``ridekeeper_events``; the table is created by ``storage.postgres``."""

    _INSERT = (
        "INSERT INTO ridekeeper_events "
        "(event_id, entity_id, event_type, payload, created_at, idempotency_key) "
        "VALUES (%s, %s, %s, %s, %s, %s) "
        "ON CONFLICT (idempotency_key) DO NOTHING"
    )

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self._conn = conn

    def append(
        self,
        entity_id: str,
        event_type: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> str:
        event_id = uuid.uuid4().hex
        params = (
            event_id,
            entity_id,
            event_type,
            json.dumps(payload, default=str),
            datetime.now(UTC),
            idempotency_key,
        )
        with self._conn.cursor() as cur:
            cur.execute(self._INSERT, params)
        self._conn.commit()
        return event_id

    def recent(
        self,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        filters = {"entity_id": entity_id, "event_type": event_type}
        active = {column: value for column, value in filters.items() if value}
        where = " AND ".join(f"{column} = %s" for column in active)
        query = (
            f"SELECT {', '.join(_COLUMNS)} FROM ridekeeper_events "  # noqa: S608
            f"{'WHERE ' + where + ' ' if where else ''}"
            "ORDER BY created_at DESC LIMIT %s"
        )
        with self._conn.cursor() as cur:
            cur.execute(query, [*active.values(), limit])
            rows = cur.fetchall()
        return [self._to_event(row) for row in rows]

    @staticmethod
    def _to_event(row: tuple[Any, ...]) -> dict[str, Any]:
        event = dict(zip(_COLUMNS, row, strict=True))
        if isinstance(event["payload"], str):
            event["payload"] = json.loads(event["payload"])
        if isinstance(event["created_at"], datetime):
            event["created_at"] = event["created_at"].isoformat()
        return event
