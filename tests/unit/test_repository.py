"""Tests for the in-memory data store's atomic operations."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from ridekeeper.models import (
    AppointmentStatus,
    Message,
    MessageDirection,
    MessageStatus,
    NoShowRecord,
    RideRecord,
    RideStatus,
)

if TYPE_CHECKING:
    from ridekeeper.storage.repository import InMemoryDataStore
    from tests.conftest import FakeClock, SeedFn


def _ride(clock: FakeClock, appointment_id: str = "APT-1", **kwargs: object) -> RideRecord:
    return RideRecord(
        appointment_id=appointment_id,
        pickup_location="12 Mission St",
        dropoff_location="500 Mission St",
        pickup_time=clock.now + timedelta(hours=2),
        **kwargs,  # type: ignore[arg-type]
    )


class TestAppointments:
    @pytest.mark.anyio()
    async def test_reads_are_copies(self, store: InMemoryDataStore, seed: SeedFn) -> None:
        await seed()
        appt = await store.get_appointment("APT-1")
        appt.offer_sent = True
        assert (await store.get_appointment("APT-1")).offer_sent is False

    @pytest.mark.anyio()
    async def test_mark_offer_sent_once(
        self, store: InMemoryDataStore, seed: SeedFn, clock: FakeClock
    ) -> None:
        await seed()
        assert await store.mark_offer_sent("APT-1", clock.now) is True
        assert await store.mark_offer_sent("APT-1", clock.now) is False
        assert (await store.get_appointment("APT-1")).offer_sent_at == clock.now

    @pytest.mark.anyio()
    async def test_status_compare_and_set(self, store: InMemoryDataStore, seed: SeedFn) -> None:
        await seed()
        scheduled = {AppointmentStatus.SCHEDULED}
        assert await store.transition_appointment_status(
            "APT-1", scheduled, AppointmentStatus.CONFIRMED
        )
        assert not await store.transition_appointment_status(
            "APT-1", scheduled, AppointmentStatus.CONFIRMED
        )

    @pytest.mark.anyio()
    async def test_list_filters_and_sorts(self, store: InMemoryDataStore, seed: SeedFn) -> None:
        await seed("APT-LATE", in_hours=48)
        await seed("APT-SOON", in_hours=2)
        await seed("APT-DONE", in_hours=3, status=AppointmentStatus.COMPLETED)

        ids = [a.id for a in await store.list_appointments()]
        assert ids == ["APT-SOON", "APT-DONE", "APT-LATE"]
        active = await store.list_appointments(statuses={AppointmentStatus.SCHEDULED})
        assert [a.id for a in active] == ["APT-SOON", "APT-LATE"]

    @pytest.mark.anyio()
    async def test_update_unknown_raises(self, store: InMemoryDataStore) -> None:
        with pytest.raises(KeyError):
            await store.update_appointment("APT-NOPE", needs_ride=True)


class TestRides:
    @pytest.mark.anyio()
    async def test_single_active_ride(self, store: InMemoryDataStore, clock: FakeClock) -> None:
        first = _ride(clock)
        assert await store.create_ride_if_absent(first) is True
        assert await store.create_ride_if_absent(_ride(clock)) is False

        await store.transition_ride_status(first.id, RideStatus.SCHEDULED, RideStatus.CANCELLED)
        assert await store.get_active_ride("APT-1") is None
        assert await store.create_ride_if_absent(_ride(clock)) is True

    @pytest.mark.anyio()
    async def test_list_by_pickup_window(self, store: InMemoryDataStore, clock: FakeClock) -> None:
        await store.create_ride_if_absent(_ride(clock, "APT-1"))
        later = _ride(clock, "APT-2", pickup_time=clock.now + timedelta(hours=5))
        await store.create_ride_if_absent(later)

        rides = await store.list_rides(
            pickup_start=clock.now + timedelta(hours=4), pickup_end=clock.now + timedelta(hours=6)
        )
        assert [r.id for r in rides] == [later.id]


class TestMessages:
    @pytest.mark.anyio()
    async def test_latest_outbound_and_status(self, store: InMemoryDataStore) -> None:
        phone = "+14155550100"
        for n, appointment_id in enumerate(("APT-1", "APT-2")):
            await store.add_message(
                Message(
                    phone=phone,
                    body=f"offer {n}",
                    direction=MessageDirection.OUTBOUND,
                    status=MessageStatus.SENT,
                    appointment_id=appointment_id,
                    provider_message_id=f"SM{n}",
                )
            )
        await store.add_message(
            Message(
                phone=phone,
                body="yes",
                direction=MessageDirection.INBOUND,
                status=MessageStatus.RECEIVED,
            )
        )

        assert (await store.latest_outbound_to(phone)).appointment_id == "APT-2"
        updated = await store.update_message_status("SM0", MessageStatus.DELIVERED)
        assert updated.status is MessageStatus.DELIVERED
        assert await store.update_message_status("SM-unknown", MessageStatus.READ) is None
        assert (await store.find_message_by_provider_id("SM1")).body == "offer 1"
        assert [m.body for m in await store.list_messages(phone=phone, limit=2)] == [
            "yes",
            "offer 1",
        ]


@pytest.mark.anyio()
async def test_no_show_window(store: InMemoryDataStore, clock: FakeClock) -> None:
    for days in (10, 200):
        await store.add_no_show(
            NoShowRecord(
                patient_id="PAT-1",
                appointment_id=f"APT-{days}",
                occurred_at=clock.now - timedelta(days=days),
            )
        )
    assert await store.count_no_shows("PAT-1", clock.now - timedelta(days=180)) == 1
    assert await store.count_no_shows("PAT-2", clock.now - timedelta(days=365)) == 0


@pytest.mark.anyio()
async def test_watermarks(store: InMemoryDataStore, clock: FakeClock) -> None:
    assert await store.get_watermark("offers") is None
    await store.set_watermark("offers", clock.now)
    assert await store.get_watermark("offers") == clock.now
