"""Redis connection management and webhook de-duplication."""

from __future__ import annotations

import logging

import redis

__all__ = ["INBOUND_DEDUP_TTL_SECONDS", "claim_inbound", "get_redis_client", "release_inbound"]

logger = logging.getLogger(__name__)

INBOUND_DEDUP_TTL_SECONDS = 24 * 60 * 60
_DEDUP_PREFIX = "ridekeeper:inbound:"


def get_redis_client(url: str = "redis://localhost:6379/0") -> redis.Redis:  # type: ignore[type-arg]
    """Create a Redis client."""
    return redis.Redis.from_url(url, decode_responses=True)


def claim_inbound(client: redis.Redis, provider_message_id: str) -> bool:  # type: ignore[type-arg]
    """SET NX on the provider message id. False means it was seen before."""
    claimed = client.set(
        _DEDUP_PREFIX + provider_message_id, "1", nx=True, ex=INBOUND_DEDUP_TTL_SECONDS
    )
    return bool(claimed)


def release_inbound(client: redis.Redis, provider_message_id: str) -> None:  # type: ignore[type-arg]
    """Drop a claim so the provider's retry of a failed delivery is processed."""
    client.delete(_DEDUP_PREFIX + provider_message_id)
