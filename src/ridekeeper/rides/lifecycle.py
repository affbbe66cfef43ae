"""Ride lifecycle manager, the only writer of ride status.

State machine:
    SCHEDULED → DRIVER_ASSIGNED → IN_PROGRESS → COMPLETED
    any non-terminal → CANCELLED
COMPLETED and CANCELLED are terminal; only audit fields change afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ridekeeper.adapters.ride_provider import RideRequest
from ridekeeper.errors import (
    ConflictError,
    NoContactError,
    NotFoundError,
    ProviderError,
    RideExistsError,
    RideStateError,
    ValidationError,
)
from ridekeeper.events import EventType
from ridekeeper.models import (
    ACTIVE_RIDE_STATUSES,
    AppointmentStatus,
    RideRecord,
    RideStatus,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from ridekeeper.adapters.ride_provider import ProviderRide, RideProvider
    from ridekeeper.events import EventFeed
    from ridekeeper.models import Appointment
    from ridekeeper.outreach.dispatcher import OutreachDispatcher
    from ridekeeper.settings import Settings
    from ridekeeper.storage.repository import DataStore

__all__ = [
    "DEFAULT_PICKUP_LOCATION",
    "PROVIDER_STATUS_MAP",
    "RideLifecycleManager",
    "can_transition",
]

logger = logging.getLogger(__name__)

DEFAULT_PICKUP_LOCATION = "Main entrance of your current location"

PROVIDER_STATUS_MAP: dict[str, RideStatus] = {
    "scheduled": RideStatus.SCHEDULED,
    "driver_assigned": RideStatus.DRIVER_ASSIGNED,
    "en_route": RideStatus.DRIVER_ASSIGNED,
    "arrived": RideStatus.DRIVER_ASSIGNED,
    "in_progress": RideStatus.IN_PROGRESS,
    "completed": RideStatus.COMPLETED,
    "cancelled": RideStatus.CANCELLED,
}

_RANK = {
    RideStatus.SCHEDULED: 0,
    RideStatus.DRIVER_ASSIGNED: 1,
    RideStatus.IN_PROGRESS: 2,
    RideStatus.COMPLETED: 3,
}


def can_transition(current: RideStatus, new: RideStatus) -> bool:
    """Forward moves only; CANCELLED from any non-terminal state."""
    if current.is_terminal or current is new:
        return False
    if new is RideStatus.CANCELLED:
        return True
    return _RANK[new] > _RANK[current]


@runtime_checkable
class SupportsForceStatus(Protocol):
    def force_status(self, ride_id: str, status: str) -> ProviderRide | None: ...


class RideLifecycleManager:
    """Books rides, reconciles them with the provider, cancels them."""

    def __init__(
        self,
        store: DataStore,
        provider: RideProvider,
        dispatcher: OutreachDispatcher,
        feed: EventFeed,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._provider = provider
        self._dispatcher = dispatcher
        self._feed = feed
        self._settings = settings
        self._clock = clock

    def pickup_time_for(self, appointment: Appointment) -> datetime:
        return appointment.scheduled_at - timedelta(minutes=self._settings.pickup_offset_minutes)

    # ── Booking ──────────────────────────────────────────────────

    async def book_ride(
        self,
        appointment_id: str,
        pickup_location: str | None = None,
        pickup_time: datetime | None = None,
    ) -> RideRecord:
        """Book the single active ride for an appointment.

        Order: provider booking, then ride record, then appointment
        CONFIRMED. A crash after the ride record is repaired by
        ``reconcile``.
        """
        appointment = await self._store.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        if not appointment.is_active:
            raise ConflictError(
                f"Appointment {appointment_id} is {appointment.status.value}; cannot book a ride"
            )
        if await self._store.get_active_ride(appointment_id) is not None:
            raise RideExistsError(f"A ride is already booked for appointment {appointment_id}")

        patient = await self._store.get_patient(appointment.patient_id)
        site = await self._store.get_site(appointment.site_id)
        if patient is None or site is None:
            raise NotFoundError(f"Patient or care site missing for appointment {appointment_id}")

        where = (pickup_location or "").strip() or patient.address or DEFAULT_PICKUP_LOCATION
        when = pickup_time or self.pickup_time_for(appointment)
        if when.tzinfo is None:
            raise ValidationError("pickup_time must be timezone-aware")

        request = RideRequest(
            pickup_address=where,
            dropoff_address=site.address,
            pickup_time=when,
            patient_name=patient.full_name,
            patient_phone=patient.phone or "",
            dropoff_lat=site.latitude,
            dropoff_lng=site.longitude,
            estimated_miles=patient.distance_miles,
        )
        booked = await self._call(self._provider.book(request), "booking")

        ride = RideRecord(
            appointment_id=appointment_id,
            pickup_location=where,
            dropoff_location=site.address,
            pickup_time=when,
            status=RideStatus.SCHEDULED,
            provider_ride_id=booked.ride_id,
            provider_status=booked.status,
            estimated_cost=booked.estimated_cost,
            created_at=self._clock(),
        )
        if not await self._store.create_ride_if_absent(ride):
            logger.warning("Concurrent booking for %s; releasing %s", appointment_id, booked.ride_id)
            await self._release(booked.ride_id)
            raise RideExistsError(f"A ride is already booked for appointment {appointment_id}")

        await self._store.update_appointment(appointment_id, needs_ride=True, ride_declined=False)
        await self._confirm_appointment(appointment_id)

        logger.info("Ride %s booked for %s (provider %s)", ride.id, appointment_id, booked.ride_id)
        await self._feed.publish(
            EventType.RIDE_BOOKED,
            ride.id,
            {
                "appointment_id": appointment_id,
                "patient_name": patient.full_name,
                "pickup_time": when.isoformat(),
                "estimated_cost": booked.estimated_cost,
            },
        )
        return ride

    # ── Reconciliation ───────────────────────────────────────────

    async def reconcile(self, ride: RideRecord) -> bool:
        """Sync one ride with the provider. Returns True when something changed.

        Notifications fire only on a real change of internal or provider
        status. Unchanged polls write driver/location fields silently.
        """
        if ride.status.is_terminal or not ride.provider_ride_id:
            return False

        remote = await self._call(self._provider.status(ride.provider_ride_id), "status lookup")
        if remote is None:
            logger.warning("Provider has no record of ride %s", ride.provider_ride_id)
            return False

        mapped = PROVIDER_STATUS_MAP.get(remote.status, ride.status)
        status_changed = can_transition(ride.status, mapped)
        provider_changed = remote.status != ride.provider_status

        if status_changed and not await self._store.transition_ride_status(
            ride.id, ride.status, mapped
        ):
            logger.info("Ride %s changed underneath reconciliation; skipping", ride.id)
            return False

        updated = await self._store.update_ride(ride.id, **self._audit_fields(ride, remote))

        if updated.status in ACTIVE_RIDE_STATUSES:
            await self._confirm_appointment(ride.appointment_id)

        if not (status_changed or provider_changed):
            return False

        await self._publish_status(ride, updated, remote)
        if provider_changed and remote.status == "arrived":
            await self._notify_arrival(updated)
        return True

    # ── Manual actions ───────────────────────────────────────────

    async def cancel_ride(self, ride_id: str) -> RideRecord:
        ride = await self._require_ride(ride_id)
        if ride.status in (RideStatus.COMPLETED, RideStatus.IN_PROGRESS):
            raise RideStateError(f"Cannot cancel ride in status {ride.status.value}")
        if ride.status is RideStatus.CANCELLED:
            raise RideStateError(f"Ride {ride_id} is already cancelled")

        if ride.provider_ride_id and not await self._call(
            self._provider.cancel(ride.provider_ride_id), "cancellation"
        ):
            raise RideStateError(f"Provider refused to cancel ride {ride.provider_ride_id}")

        if not await self._store.transition_ride_status(ride_id, ride.status, RideStatus.CANCELLED):
            raise RideStateError(f"Ride {ride_id} changed while cancelling")

        updated = await self._store.update_ride(ride_id, provider_status="cancelled")
        logger.info("Ride %s cancelled", ride_id)
        await self._publish_status(ride, updated, None)
        return updated

    async def force_status(self, ride_id: str, provider_status: str) -> RideRecord:
        """Operator override using provider vocabulary. Terminal rides stay put."""
        mapped = PROVIDER_STATUS_MAP.get(provider_status)
        if mapped is None:
            raise ValidationError(f"Unknown ride status: {provider_status}")
        ride = await self._require_ride(ride_id)
        if ride.status.is_terminal:
            raise RideStateError(f"Ride {ride_id} is {ride.status.value}; status is final")

        remote = None
        if ride.provider_ride_id and isinstance(self._provider, SupportsForceStatus):
            remote = self._provider.force_status(ride.provider_ride_id, provider_status)

        if mapped is not ride.status and not await self._store.transition_ride_status(
            ride_id, ride.status, mapped
        ):
            raise RideStateError(f"Ride {ride_id} changed during override")

        fields = self._audit_fields(ride, remote) if remote else {}
        fields["provider_status"] = provider_status
        updated = await self._store.update_ride(ride_id, **fields)
        await self._publish_status(ride, updated, remote)
        if provider_status == "arrived" and ride.provider_status != "arrived":
            await self._notify_arrival(updated)
        return updated

    async def record_reminder(self, ride_id: str, at: datetime) -> RideRecord:
        return await self._store.update_ride(ride_id, reminder_sent_at=at)

    async def live_status(self, ride: RideRecord) -> ProviderRide | None:
        """Provider's current view of a ride, or None when unavailable."""
        if not ride.provider_ride_id:
            return None
        try:
            return await self._call(self._provider.status(ride.provider_ride_id), "status lookup")
        except ProviderError:
            logger.warning("Live status unavailable for ride %s", ride.id, exc_info=True)
            return None

    # ── internals ────────────────────────────────────────────────

    async def _call(self, awaitable: Any, what: str) -> Any:
        try:
            return await asyncio.wait_for(
                awaitable, timeout=self._settings.external_timeout_seconds
            )
        except ProviderError:
            raise
        except TimeoutError as exc:
            raise ProviderError(f"Ride provider {what} timed out") from exc
        except Exception as exc:
            raise ProviderError(f"Ride provider {what} failed: {exc}") from exc

    async def _release(self, provider_ride_id: str) -> None:
        try:
            await self._call(self._provider.cancel(provider_ride_id), "cancellation")
        except ProviderError:
            logger.warning("Could not release provider ride %s", provider_ride_id, exc_info=True)

    async def _require_ride(self, ride_id: str) -> RideRecord:
        ride = await self._store.get_ride(ride_id)
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found")
        return ride

    async def _confirm_appointment(self, appointment_id: str) -> None:
        if await self._store.transition_appointment_status(
            appointment_id, {AppointmentStatus.SCHEDULED}, AppointmentStatus.CONFIRMED
        ):
            await self._feed.publish(
                EventType.APPOINTMENT_STATUS_CHANGED,
                appointment_id,
                {"status": AppointmentStatus.CONFIRMED.value},
            )

    async def _notify_arrival(self, ride: RideRecord) -> None:
        try:
            await self._dispatcher.send_driver_arriving(ride)
        except (NoContactError, NotFoundError):
            logger.warning("No one to notify of arrival for ride %s", ride.id)

    async def _publish_status(
        self, before: RideRecord, after: RideRecord, remote: ProviderRide | None
    ) -> None:
        payload: dict[str, Any] = {
            "appointment_id": after.appointment_id,
            "old_status": before.status.value,
            "new_status": after.status.value,
            "provider_status": after.provider_status,
        }
        if remote is not None:
            if remote.driver is not None:
                payload["driver"] = {"name": remote.driver.name, "vehicle": remote.driver.vehicle}
            if remote.current_location is not None:
                payload["current_location"] = {
                    "lat": remote.current_location[0],
                    "lng": remote.current_location[1],
                }
            if remote.eta_minutes is not None:
                payload["eta_minutes"] = remote.eta_minutes
        await self._feed.publish(EventType.RIDE_STATUS_CHANGED, after.id, payload)

    @staticmethod
    def _audit_fields(ride: RideRecord, remote: ProviderRide) -> dict[str, Any]:
        fields: dict[str, Any] = {"provider_status": remote.status}
        if remote.driver is not None:
            fields["driver_name"] = remote.driver.name
            fields["vehicle_info"] = remote.driver.vehicle_info
        if remote.current_location is not None:
            fields["driver_latitude"], fields["driver_longitude"] = remote.current_location
        if remote.eta_minutes is not None:
            fields["eta_minutes"] = remote.eta_minutes
        if remote.estimated_cost is not None and ride.estimated_cost is None:
            fields["estimated_cost"] = remote.estimated_cost
        return fields


