"""Tests for appointment ingestion."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from ridekeeper.models import AIAssessment, AppointmentStatus, CachedAssessment

if TYPE_CHECKING:
    from httpx import AsyncClient

    from ridekeeper.storage.repository import InMemoryDataStore
    from tests.conftest import FakeClock


def _payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "appointment_id": "APT-100",
        "scheduled_at": "2026-03-17T17:10:00+00:00",
        "appointment_type": "Primary care",
        "patient": {
            "patient_id": "PAT-100",
            "first_name": "Ana",
            "last_name": "Reyes",
            "phone": "+14155550111",
            "housing_status": "UNSTABLY_HOUSED",
            "address": "88 Howard St",
            "distance_miles": 3.5,
        },
        "site": {
            "site_id": "SITE-1",
            "name": "Mission Street Clinic",
            "address": "500 Mission St, San Francisco",
        },
    }
    payload.update(overrides)
    return payload


@pytest.mark.anyio()
async def test_ingest_creates_and_scores(client: AsyncClient, store: InMemoryDataStore) -> None:
    resp = await client.post("/ingest", json=_payload())

    assert resp.status_code == 202
    body = resp.json()
    assert body["created"] is True
    # unstable housing 25 + 2-5 miles 20
    assert body["risk"]["score"] == 45
    assert body["risk"]["category"] == "MEDIUM"
    assert body["risk"]["is_ai_enhanced"] is False
    assert "risk: MEDIUM" in body["message"]

    appt = await store.get_appointment("APT-100")
    assert appt.final_score == 45
    assert (await store.get_patient("PAT-100")).address == "88 Howard St"


@pytest.mark.anyio()
async def test_reingest_keeps_outreach_state(
    client: AsyncClient, store: InMemoryDataStore, clock: FakeClock
) -> None:
    await client.post("/ingest", json=_payload())
    await store.mark_offer_sent("APT-100", clock.now)
    await store.update_appointment("APT-100", ride_declined=True)

    resp = await client.post("/ingest", json=_payload(appointment_type="Dental"))

    assert resp.json()["created"] is False
    appt = await store.get_appointment("APT-100")
    assert appt.appointment_type == "Dental"
    assert appt.offer_sent is True
    assert appt.ride_declined is True


@pytest.mark.anyio()
async def test_time_change_drops_cached_assessment(
    client: AsyncClient, store: InMemoryDataStore, clock: FakeClock
) -> None:
    await client.post("/ingest", json=_payload())
    await store.put_cached_assessment(
        CachedAssessment(
            appointment_id="APT-100",
            assessment=AIAssessment(adjusted_score=60, adjustment=15, confidence=90, rationale="x"),
            expires_at=clock.now.replace(year=2027),
        )
    )

    await client.post("/ingest", json=_payload(scheduled_at="2026-03-18T17:10:00+00:00"))

    assert await store.get_cached_assessment("APT-100") is None


@pytest.mark.anyio()
async def test_proxies_and_status_are_stored(client: AsyncClient, store: InMemoryDataStore) -> None:
    payload = _payload(status="CONFIRMED")
    payload["patient"]["phone"] = None
    payload["patient"]["proxies"] = [
        {"name": "Case Worker", "phone": "+14155550199", "organization": "Shelter"}
    ]

    resp = await client.post("/ingest", json=payload)

    assert resp.status_code == 202
    patient = await store.get_patient("PAT-100")
    assert patient.phone is None
    assert patient.proxies[0].phone == "+14155550199"
    assert (await store.get_appointment("APT-100")).status is AppointmentStatus.CONFIRMED


@pytest.mark.anyio()
@pytest.mark.parametrize(
    "overrides",
    [
        {"scheduled_at": "2026-03-17T17:10:00"},
        {"status": "LOST"},
        {"patient": {"patient_id": "P", "first_name": "A", "housing_status": "CASTLE"}},
        {"patient": {"patient_id": "P", "first_name": "A", "distance_miles": -1}},
    ],
)
async def test_invalid_payloads_rejected(
    client: AsyncClient, store: InMemoryDataStore, overrides: dict[str, Any]
) -> None:
    resp = await client.post("/ingest", json=_payload(**overrides))
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "INVALID_REQUEST"
    assert await store.get_appointment("APT-100") is None
