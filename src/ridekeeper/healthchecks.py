"""Readiness probes for PostgreSQL, Redis and the ride provider.

Each probe answers True or False and never raises. Blocking client
libraries run in a worker thread so a slow dependency cannot stall the
event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx
import psycopg
import redis

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

__all__ = ["PROBE_TIMEOUT", "check_postgres", "check_redis", "check_ride_provider"]

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 2.0  # seconds


async def _probe(name: str, check: Callable[[], Awaitable[bool]]) -> bool:
    try:
        return await asyncio.wait_for(check(), timeout=PROBE_TIMEOUT + 1)
    except Exception:
        logger.warning("%s readiness probe failed", name, exc_info=True)
        return False


def _select_one(dsn: str) -> bool:
    with psycopg.connect(dsn, connect_timeout=int(PROBE_TIMEOUT)) as conn:
        conn.execute("SELECT 1")
    return True


def _ping(url: str) -> bool:
    client = redis.Redis.from_url(
        url, socket_timeout=PROBE_TIMEOUT, socket_connect_timeout=PROBE_TIMEOUT
    )
    try:
        return bool(client.ping())
    finally:
        client.close()


async def check_postgres(dsn: str) -> bool:
    if not dsn:
        return False
    return await _probe("PostgreSQL", lambda: asyncio.to_thread(_select_one, dsn))


async def check_redis(url: str) -> bool:
    if not url:
        return False
    return await _probe("Redis", lambda: asyncio.to_thread(_ping, url))


async def check_ride_provider(base_url: str) -> bool:
    """GET ``{base_url}/health``; any 2xx counts as up."""
    if not base_url:
        return False

    async def _get() -> bool:
        async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
            resp = await client.get(f"{base_url.rstrip('/')}/health")
        return resp.is_success

    return await _probe("Ride provider", _get)
