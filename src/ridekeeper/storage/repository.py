"""Transactional data store: repository protocol and in-memory implementation.

All components treat the store as the single source of truth and re-read
before conditional writes. The conditional operations (``mark_offer_sent``,
``create_ride_if_absent``, ``transition_*``) are the concurrency guards for
the at-most-one-offer and at-most-one-active-ride invariants.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Protocol

from ridekeeper.models import (
    Appointment,
    AppointmentStatus,
    CachedAssessment,
    CareSite,
    Message,
    MessageDirection,
    MessageStatus,
    NoShowRecord,
    Patient,
    RideRecord,
    RideStatus,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Collection
    from datetime import datetime

__all__ = ["DataStore", "InMemoryDataStore"]


class DataStore(Protocol):
    """Repository-style contract over the persistent store."""

    # patients / sites
    async def get_patient(self, patient_id: str) -> Patient | None: ...
    async def save_patient(self, patient: Patient) -> None: ...
    async def get_site(self, site_id: str) -> CareSite | None: ...
    async def save_site(self, site: CareSite) -> None: ...

    # appointments
    async def get_appointment(self, appointment_id: str) -> Appointment | None: ...
    async def save_appointment(self, appointment: Appointment) -> None: ...
    async def list_appointments(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        statuses: Collection[AppointmentStatus] | None = None,
        patient_id: str | None = None,
    ) -> list[Appointment]: ...
    async def update_appointment(self, appointment_id: str, **changes: Any) -> Appointment: ...
    async def mark_offer_sent(self, appointment_id: str, at: datetime) -> bool: ...
    async def transition_appointment_status(
        self,
        appointment_id: str,
        expected: Collection[AppointmentStatus],
        new: AppointmentStatus,
    ) -> bool: ...

    # rides
    async def get_ride(self, ride_id: str) -> RideRecord | None: ...
    async def get_active_ride(self, appointment_id: str) -> RideRecord | None: ...
    async def create_ride_if_absent(self, ride: RideRecord) -> bool: ...
    async def list_rides(
        self,
        statuses: Collection[RideStatus] | None = None,
        pickup_start: datetime | None = None,
        pickup_end: datetime | None = None,
    ) -> list[RideRecord]: ...
    async def update_ride(self, ride_id: str, **changes: Any) -> RideRecord: ...
    async def transition_ride_status(
        self, ride_id: str, expected: RideStatus, new: RideStatus
    ) -> bool: ...

    # messages
    async def add_message(self, message: Message) -> Message: ...
    async def update_message(self, message_id: str, **changes: Any) -> Message: ...
    async def update_message_status(
        self, provider_message_id: str, status: MessageStatus
    ) -> Message | None: ...
    async def find_message_by_provider_id(self, provider_message_id: str) -> Message | None: ...
    async def latest_outbound_to(self, phone: str) -> Message | None: ...
    async def list_messages(
        self,
        appointment_id: str | None = None,
        phone: str | None = None,
        limit: int = 50,
    ) -> list[Message]: ...

    # no-show history
    async def add_no_show(self, record: NoShowRecord) -> None: ...
    async def count_no_shows(self, patient_id: str, since: datetime) -> int: ...

    # assessment cache
    async def get_cached_assessment(self, appointment_id: str) -> CachedAssessment | None: ...
    async def put_cached_assessment(self, cached: CachedAssessment) -> None: ...
    async def delete_cached_assessment(self, appointment_id: str) -> bool: ...

    # sweep watermarks
    async def get_watermark(self, name: str) -> datetime | None: ...
    async def set_watermark(self, name: str, value: datetime) -> None: ...


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryDataStore:
    """Dict-backed store. One asyncio lock makes every write atomic.

    Reads hand out copies so callers cannot mutate stored state without
    going through a write method.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._patients: dict[str, Patient] = {}
        self._sites: dict[str, CareSite] = {}
        self._appointments: dict[str, Appointment] = {}
        self._rides: dict[str, RideRecord] = {}
        self._messages: list[Message] = []
        self._no_shows: list[NoShowRecord] = []
        self._cache: dict[str, CachedAssessment] = {}
        self._watermarks: dict[str, datetime] = {}

    # -- patients / sites ----------------------------------------------------

    async def get_patient(self, patient_id: str) -> Patient | None:
        patient = self._patients.get(patient_id)
        return copy.deepcopy(patient) if patient else None

    async def save_patient(self, patient: Patient) -> None:
        async with self._lock:
            self._patients[patient.id] = copy.deepcopy(patient)

    async def get_site(self, site_id: str) -> CareSite | None:
        site = self._sites.get(site_id)
        return replace(site) if site else None

    async def save_site(self, site: CareSite) -> None:
        async with self._lock:
            self._sites[site.id] = replace(site)

    # -- appointments --------------------------------------------------------

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        appt = self._appointments.get(appointment_id)
        return copy.deepcopy(appt) if appt else None

    async def save_appointment(self, appointment: Appointment) -> None:
        async with self._lock:
            self._appointments[appointment.id] = copy.deepcopy(appointment)

    async def list_appointments(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        statuses: Collection[AppointmentStatus] | None = None,
        patient_id: str | None = None,
    ) -> list[Appointment]:
        out = []
        for appt in self._appointments.values():
            if start is not None and appt.scheduled_at < start:
                continue
            if end is not None and appt.scheduled_at > end:
                continue
            if statuses is not None and appt.status not in statuses:
                continue
            if patient_id is not None and appt.patient_id != patient_id:
                continue
            out.append(copy.deepcopy(appt))
        return sorted(out, key=lambda a: a.scheduled_at)

    async def update_appointment(self, appointment_id: str, **changes: Any) -> Appointment:
        async with self._lock:
            appt = self._require(self._appointments, appointment_id)
            updated = replace(appt, **changes, updated_at=utcnow())
            self._appointments[appointment_id] = updated
            return copy.deepcopy(updated)

    async def mark_offer_sent(self, appointment_id: str, at: datetime) -> bool:
        async with self._lock:
            appt = self._require(self._appointments, appointment_id)
            if appt.offer_sent:
                return False
            self._appointments[appointment_id] = replace(
                appt, offer_sent=True, offer_sent_at=at, updated_at=utcnow()
            )
            return True

    async def transition_appointment_status(
        self,
        appointment_id: str,
        expected: Collection[AppointmentStatus],
        new: AppointmentStatus,
    ) -> bool:
        async with self._lock:
            appt = self._require(self._appointments, appointment_id)
            if appt.status not in expected:
                return False
            self._appointments[appointment_id] = replace(appt, status=new, updated_at=utcnow())
            return True

    # -- rides ---------------------------------------------------------------

    async def get_ride(self, ride_id: str) -> RideRecord | None:
        ride = self._rides.get(ride_id)
        return replace(ride) if ride else None

    async def get_active_ride(self, appointment_id: str) -> RideRecord | None:
        for ride in self._rides.values():
            if ride.appointment_id == appointment_id and ride.status is not RideStatus.CANCELLED:
                return replace(ride)
        return None

    async def create_ride_if_absent(self, ride: RideRecord) -> bool:
        async with self._lock:
            for existing in self._rides.values():
                if (
                    existing.appointment_id == ride.appointment_id
                    and existing.status is not RideStatus.CANCELLED
                ):
                    return False
            self._rides[ride.id] = replace(ride)
            return True

    async def list_rides(
        self,
        statuses: Collection[RideStatus] | None = None,
        pickup_start: datetime | None = None,
        pickup_end: datetime | None = None,
    ) -> list[RideRecord]:
        out = []
        for ride in self._rides.values():
            if statuses is not None and ride.status not in statuses:
                continue
            if pickup_start is not None and ride.pickup_time < pickup_start:
                continue
            if pickup_end is not None and ride.pickup_time > pickup_end:
                continue
            out.append(replace(ride))
        return sorted(out, key=lambda r: r.pickup_time)

    async def update_ride(self, ride_id: str, **changes: Any) -> RideRecord:
        async with self._lock:
            ride = self._require(self._rides, ride_id)
            updated = replace(ride, **changes, updated_at=utcnow())
            self._rides[ride_id] = updated
            return replace(updated)

    async def transition_ride_status(
        self, ride_id: str, expected: RideStatus, new: RideStatus
    ) -> bool:
        async with self._lock:
            ride = self._require(self._rides, ride_id)
            if ride.status is not expected:
                return False
            self._rides[ride_id] = replace(ride, status=new, updated_at=utcnow())
            return True

    # -- messages ------------------------------------------------------------

    async def add_message(self, message: Message) -> Message:
        async with self._lock:
            self._messages.append(replace(message))
        return message

    async def update_message(self, message_id: str, **changes: Any) -> Message:
        async with self._lock:
            for i, msg in enumerate(self._messages):
                if msg.id == message_id:
                    self._messages[i] = replace(msg, **changes)
                    return replace(self._messages[i])
        raise KeyError(message_id)

    async def update_message_status(
        self, provider_message_id: str, status: MessageStatus
    ) -> Message | None:
        async with self._lock:
            for i, msg in enumerate(self._messages):
                if msg.provider_message_id == provider_message_id:
                    self._messages[i] = replace(msg, status=status)
                    return replace(self._messages[i])
        return None

    async def find_message_by_provider_id(self, provider_message_id: str) -> Message | None:
        for msg in self._messages:
            if msg.provider_message_id == provider_message_id:
                return replace(msg)
        return None

    async def latest_outbound_to(self, phone: str) -> Message | None:
        for msg in reversed(self._messages):
            if msg.direction is MessageDirection.OUTBOUND and msg.phone == phone:
                return replace(msg)
        return None

    async def list_messages(
        self,
        appointment_id: str | None = None,
        phone: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        out = self._messages
        if appointment_id:
            out = [m for m in out if m.appointment_id == appointment_id]
        if phone:
            out = [m for m in out if m.phone == phone]
        return [replace(m) for m in reversed(out)][:limit]

    # -- no-show history -----------------------------------------------------

    async def add_no_show(self, record: NoShowRecord) -> None:
        async with self._lock:
            self._no_shows.append(record)

    async def count_no_shows(self, patient_id: str, since: datetime) -> int:
        return sum(
            1 for r in self._no_shows if r.patient_id == patient_id and r.occurred_at >= since
        )

    # -- assessment cache ----------------------------------------------------

    async def get_cached_assessment(self, appointment_id: str) -> CachedAssessment | None:
        return self._cache.get(appointment_id)

    async def put_cached_assessment(self, cached: CachedAssessment) -> None:
        async with self._lock:
            self._cache[cached.appointment_id] = cached

    async def delete_cached_assessment(self, appointment_id: str) -> bool:
        async with self._lock:
            return self._cache.pop(appointment_id, None) is not None

    # -- sweep watermarks ----------------------------------------------------

    async def get_watermark(self, name: str) -> datetime | None:
        return self._watermarks.get(name)

    async def set_watermark(self, name: str, value: datetime) -> None:
        async with self._lock:
            self._watermarks[name] = value

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _require(table: dict[str, Any], key: str) -> Any:
        try:
            return table[key]
        except KeyError:
            msg = f"Unknown record: {key}"
            raise KeyError(msg) from None
