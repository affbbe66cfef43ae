"""Shared fixtures for integration tests.

These tests drive the real application through its lifespan:
    ingest → scoring → offer sweep → inbound reply → ride booking → status sync

Settings come from the environment, exactly as in production. External
boundaries stay in their local modes: logging SMS transport, simulated
ride provider, no inference, no PostgreSQL or Redis.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from ridekeeper.api.app import create_app

_ENV = {
    "RIDEKEEPER_TEST_MODE": "true",
    "RIDEKEEPER_INFERENCE_ENABLED": "false",
    "RIDEKEEPER_SCHEDULER_ENABLED": "false",
    "RIDEKEEPER_PG_DSN": "",
    "RIDEKEEPER_REDIS_URL": "",
    "RIDEKEEPER_RIDE_PROVIDER_URL": "",
    "RIDEKEEPER_TWILIO_AUTH_TOKEN": "",
    "RIDEKEEPER_LOG_JSON": "false",
}


@pytest.fixture()
async def client(monkeypatch: pytest.MonkeyPatch) -> AsyncIterator[AsyncClient]:
    for key, value in _ENV.items():
        monkeypatch.setenv(key, value)
    app = create_app()
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c


PayloadFn = Callable[..., dict[str, Any]]


@pytest.fixture()
def appointment_payload() -> PayloadFn:
    """Build an /ingest payload for an appointment ``in_minutes`` from now."""
    return _payload


def _payload(
    appointment_id: str,
    *,
    in_minutes: float,
    phone: str | None = "+14155550100",
    housing_status: str = "HOMELESS",
    distance_miles: float = 8.0,
) -> dict[str, Any]:
    scheduled_at = datetime.now(UTC) + timedelta(minutes=in_minutes)
    return {
        "appointment_id": appointment_id,
        "scheduled_at": scheduled_at.isoformat(),
        "appointment_type": "Primary care",
        "patient": {
            "patient_id": f"PAT-{appointment_id}",
            "first_name": "Maria",
            "last_name": "Lopez",
            "phone": phone,
            "housing_status": housing_status,
            "address": "12 Mission St",
            "distance_miles": distance_miles,
        },
        "site": {
            "site_id": "SITE-1",
            "name": "Mission Street Clinic",
            "address": "500 Mission St, San Francisco",
            "latitude": 37.789,
            "longitude": -122.399,
        },
    }
