"""PostgreSQL connection management and event-log schema."""

from __future__ import annotations

import psycopg

__all__ = ["get_connection", "ensure_event_schema"]

_EVENT_DDL = """
CREATE TABLE IF NOT EXISTS ridekeeper_events (
    event_id        TEXT PRIMARY KEY,
    entity_id       TEXT NOT NULL,
    event_type      TEXT NOT NULL,
    payload         JSONB NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL,
    idempotency_key TEXT UNIQUE
);
CREATE INDEX IF NOT EXISTS ridekeeper_events_entity_idx ON ridekeeper_events (entity_id);
"""


def get_connection(dsn: str) -> psycopg.Connection[tuple[object, ...]]:
    """Open a PostgreSQL connection (explicit commits)."""
    return psycopg.connect(dsn, autocommit=False)


def ensure_event_schema(conn: psycopg.Connection[tuple[object, ...]]) -> None:
    """Create the feed-log table if it does not exist yet."""
    with conn.cursor() as cur:
        cur.execute(_EVENT_DDL)
    conn.commit()
