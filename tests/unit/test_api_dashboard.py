"""Tests for the dashboard endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from ridekeeper.models import AppointmentStatus, RideRecord, RideStatus

if TYPE_CHECKING:
    from httpx import AsyncClient

    from ridekeeper.storage.repository import InMemoryDataStore
    from tests.conftest import FakeClock, SeedFn

DAY = 24


async def _ride(
    store: InMemoryDataStore,
    appointment_id: str,
    pickup: datetime,
    status: RideStatus = RideStatus.SCHEDULED,
    cost: float | None = None,
) -> None:
    await store.create_ride_if_absent(
        RideRecord(
            appointment_id=appointment_id,
            pickup_location="12 Mission St",
            dropoff_location="500 Mission St",
            pickup_time=pickup,
            status=status,
            estimated_cost=cost,
        )
    )


@pytest.mark.anyio()
async def test_stats(
    client: AsyncClient, store: InMemoryDataStore, seed: SeedFn, clock: FakeClock
) -> None:
    await seed("APT-HIGH", in_hours=DAY, final_score=80, offer_sent=True)
    await seed("APT-LOW", in_hours=2 * DAY, risk_score=20)
    await seed("APT-FAR", in_hours=8 * DAY, risk_score=90)
    await seed("APT-GONE", in_hours=DAY, risk_score=90, status=AppointmentStatus.CANCELLED)
    # last 30 days: 1 of 4 missed; earlier today does not count yet
    await seed("APT-P1", in_hours=-2 * DAY, status=AppointmentStatus.NO_SHOW)
    await seed("APT-P2", in_hours=-3 * DAY, status=AppointmentStatus.COMPLETED)
    await seed("APT-P3", in_hours=-4 * DAY, status=AppointmentStatus.COMPLETED)
    await seed("APT-P4", in_hours=-5 * DAY, status=AppointmentStatus.COMPLETED)
    await seed("APT-TODAY", in_hours=-2, status=AppointmentStatus.NO_SHOW)
    # the 30 days before that: 1 of 2 missed
    await seed("APT-Q1", in_hours=-40 * DAY, status=AppointmentStatus.NO_SHOW)
    await seed("APT-Q2", in_hours=-41 * DAY, status=AppointmentStatus.COMPLETED)
    await _ride(store, "APT-HIGH", clock.now + timedelta(hours=2))
    await _ride(store, "APT-LOW", clock.now + timedelta(hours=3), RideStatus.CANCELLED)
    await _ride(store, "APT-FAR", clock.now + timedelta(days=1))

    resp = await client.get("/dashboard/stats")

    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "stats": {
            "upcoming_appointments": 2,
            "high_risk_patients": 1,
            "offers_sent": 1,
            "rides_scheduled_today": 1,
            "no_show_rate": 25,
            "no_show_trend": -25.0,
        },
    }


@pytest.mark.anyio()
async def test_stats_on_empty_store(client: AsyncClient) -> None:
    stats = (await client.get("/dashboard/stats")).json()["stats"]
    assert stats["upcoming_appointments"] == 0
    assert stats["no_show_rate"] == 0
    assert stats["no_show_trend"] == 0.0


@pytest.mark.anyio()
async def test_rides_summary_counts_local_day(
    client: AsyncClient, store: InMemoryDataStore, clock: FakeClock
) -> None:
    # 10:00 in Los Angeles; the local day ends at 07:00 UTC tomorrow
    await _ride(store, "APT-1", clock.now + timedelta(hours=2))
    await _ride(store, "APT-2", clock.now + timedelta(hours=1), RideStatus.DRIVER_ASSIGNED)
    await _ride(store, "APT-3", clock.now - timedelta(hours=9), RideStatus.COMPLETED)
    await _ride(store, "APT-4", clock.now + timedelta(hours=3), RideStatus.CANCELLED)
    await _ride(store, "APT-5", datetime(2026, 3, 17, 6, 30, tzinfo=UTC), RideStatus.IN_PROGRESS)
    await _ride(store, "APT-6", datetime(2026, 3, 17, 7, 30, tzinfo=UTC))
    await _ride(store, "APT-7", clock.now - timedelta(hours=11), RideStatus.COMPLETED)

    resp = await client.get("/dashboard/rides-summary")

    assert resp.json()["summary"] == {
        "scheduled": 1,
        "driver_assigned": 1,
        "in_progress": 1,
        "completed": 1,
        "cancelled": 1,
        "total": 5,
    }


@pytest.mark.anyio()
async def test_roi_counts_attended_appointments(
    client: AsyncClient, store: InMemoryDataStore, seed: SeedFn, clock: FakeClock
) -> None:
    await seed("APT-A", in_hours=-DAY, status=AppointmentStatus.COMPLETED)
    await seed("APT-B", in_hours=-DAY, status=AppointmentStatus.NO_SHOW)
    await seed("APT-C", in_hours=DAY)
    await _ride(store, "APT-A", clock.now - timedelta(days=1), RideStatus.COMPLETED, cost=20.0)
    await _ride(store, "APT-B", clock.now - timedelta(days=1), RideStatus.COMPLETED, cost=30.0)
    await _ride(store, "APT-C", clock.now + timedelta(days=1), cost=25.0)

    resp = await client.get("/dashboard/roi")

    assert resp.json() == {
        "success": True,
        "roi": {
            "completed_rides": 2,
            "appointments_attended": 1,
            "total_ride_cost": 50,
            "avg_ride_cost": 25,
            "prevented_no_show_value": 150,
            "net_savings": 100,
            "roi": 3.0,
        },
    }


@pytest.mark.anyio()
async def test_roi_without_completed_rides(client: AsyncClient) -> None:
    roi = (await client.get("/dashboard/roi")).json()["roi"]
    assert roi["completed_rides"] == 0
    assert roi["avg_ride_cost"] == 18
    assert roi["roi"] == 0.0
