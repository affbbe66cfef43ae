"""Shared fixtures: fixed clock, recording transport, seeded store, wired services."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from ridekeeper.adapters.ride_provider import SimulatedRideProvider
from ridekeeper.adapters.twilio_sms import SendReceipt
from ridekeeper.api.app import Services, attach_services, build_services, create_app
from ridekeeper.models import (
    Appointment,
    AppointmentStatus,
    CareSite,
    HousingStatus,
    Patient,
    ProxyContact,
)
from ridekeeper.settings import Settings
from ridekeeper.storage.repository import InMemoryDataStore

# Monday 2026-03-16, 10:00 in Los Angeles (PDT)
NOW = datetime(2026, 3, 16, 17, 0, tzinfo=UTC)

SeedFn = Callable[..., Awaitable[Appointment]]


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingTransport:
    """Accepts every send unless ``fail`` is set."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail = False

    async def send(self, to: str, body: str, correlation_id: str) -> SendReceipt:
        if self.fail:
            return SendReceipt(accepted=False, error="gateway unavailable")
        self.sent.append({"to": to, "body": body, "ref": correlation_id})
        return SendReceipt(accepted=True, provider_message_id=f"SM{len(self.sent):04d}")


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        test_mode=True,
        inference_enabled=False,
        timezone="America/Los_Angeles",
        external_timeout_seconds=1.0,
        twilio_auth_token="",
        pg_dsn="",
        redis_url="",
        ride_provider_url="",
    )


@pytest.fixture()
def store() -> InMemoryDataStore:
    return InMemoryDataStore()


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def provider(clock: FakeClock) -> SimulatedRideProvider:
    return SimulatedRideProvider(clock=clock)


@pytest.fixture()
def services(
    settings: Settings,
    store: InMemoryDataStore,
    transport: RecordingTransport,
    provider: SimulatedRideProvider,
    clock: FakeClock,
) -> Services:
    return build_services(
        settings, store=store, transport=transport, provider=provider, clock=clock
    )


@pytest.fixture()
def seed(store: InMemoryDataStore, clock: FakeClock) -> SeedFn:
    """Insert a site, a patient and one appointment; returns the appointment.

    Defaults describe a HIGH-risk patient (homeless, 8 miles out) with a phone.
    """

    async def _seed(
        appointment_id: str = "APT-1",
        *,
        patient_id: str = "PAT-1",
        in_hours: float = 24 + 1 / 6,
        phone: str | None = "+14155550100",
        housing: HousingStatus = HousingStatus.HOMELESS,
        distance: float | None = 8.0,
        address: str | None = "12 Mission St",
        proxies: list[ProxyContact] | None = None,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
        **fields: Any,
    ) -> Appointment:
        await store.save_site(
            CareSite(
                id="SITE-1",
                name="Mission Street Clinic",
                address="500 Mission St, San Francisco",
                latitude=37.7890,
                longitude=-122.3990,
            )
        )
        await store.save_patient(
            Patient(
                id=patient_id,
                first_name="Maria",
                last_name="Lopez",
                phone=phone,
                housing_status=housing,
                address=address,
                distance_miles=distance,
                proxies=proxies or [],
            )
        )
        appointment = Appointment(
            id=appointment_id,
            patient_id=patient_id,
            site_id="SITE-1",
            scheduled_at=clock.now + timedelta(hours=in_hours),
            appointment_type="Primary care",
            status=status,
            **fields,
        )
        await store.save_appointment(appointment)
        return appointment

    return _seed


@pytest.fixture()
def app(services: Services) -> FastAPI:
    application = create_app()
    attach_services(application, services)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
