"""Outreach dispatcher: who gets texted, what they read, and the send log.

Every outbound send is written to the message log as PENDING before the
transport is called, then flipped to SENT or FAILED. The offer-sent flag
is set only after the transport accepted the offer.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from ridekeeper.errors import NoContactError, NotFoundError, OfferAlreadySentError, TransportError
from ridekeeper.events import EventType
from ridekeeper.logging import mask_phone
from ridekeeper.models import Message, MessageDirection, MessageStatus, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from ridekeeper.adapters.twilio_sms import MessageTransport, SendReceipt
    from ridekeeper.events import EventFeed
    from ridekeeper.models import Appointment, CareSite, Patient, RideRecord
    from ridekeeper.settings import Settings
    from ridekeeper.storage.repository import DataStore

__all__ = ["Contact", "OutreachDispatcher", "format_day", "format_time", "resolve_contact"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Contact:
    phone: str
    is_proxy: bool
    name: str


def resolve_contact(patient: Patient) -> Contact | None:
    """Patient's own phone first, else the first proxy with a phone."""
    if patient.phone:
        return Contact(phone=patient.phone, is_proxy=False, name=patient.first_name)
    for proxy in patient.proxies:
        if proxy.phone:
            return Contact(phone=proxy.phone, is_proxy=True, name=proxy.name)
    return None


def format_day(moment: datetime, tz: ZoneInfo) -> str:
    local = moment.astimezone(tz)
    return f"{local:%A, %B} {local.day}"


def format_time(moment: datetime, tz: ZoneInfo) -> str:
    local = moment.astimezone(tz)
    return f"{local.hour % 12 or 12}:{local:%M} {'AM' if local.hour < 12 else 'PM'}"


def _lead_time(minutes: int) -> str:
    if minutes < 60:
        return f"{max(minutes, 0)} minutes"
    hours = round(minutes / 30) / 2
    return f"{hours:g} hour{'' if hours == 1 else 's'}"


class OutreachDispatcher:
    """Resolves recipients and sends offers, reminders and notices."""

    def __init__(
        self,
        store: DataStore,
        transport: MessageTransport,
        feed: EventFeed,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._transport = transport
        self._feed = feed
        self._settings = settings
        self._clock = clock
        self._tz = ZoneInfo(settings.timezone)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ── Offers ───────────────────────────────────────────────────

    async def send_offer(self, appointment_id: str) -> Message:
        """Send the ride offer for one appointment, at most once.

        Raises:
            NotFoundError: unknown appointment, patient or care site.
            OfferAlreadySentError: the offer flag is already set.
            NoContactError: no patient phone and no proxy phone.
            TransportError: the gateway rejected the send (flag stays unset).
        """
        lock = self._lock_for(appointment_id)
        async with lock:
            appointment = await self._store.get_appointment(appointment_id)
            if appointment is None:
                raise NotFoundError(f"Appointment {appointment_id} not found")
            if appointment.offer_sent:
                raise OfferAlreadySentError(
                    f"Ride offer already sent for appointment {appointment_id}"
                )

            patient = await self._require_patient(appointment)
            site = await self._require_site(appointment)
            contact = resolve_contact(patient)
            if contact is None:
                logger.warning("No contact for appointment %s; manual follow-up", appointment_id)
                raise NoContactError(appointment_id)

            body = self.offer_text(appointment, patient, site, contact)
            message = await self._send(contact.phone, body, appointment_id)
            if message.status is MessageStatus.FAILED:
                raise TransportError(message.error or "SMS send failed")

            if not await self._store.mark_offer_sent(appointment_id, self._clock()):
                logger.warning("Offer flag for %s was set concurrently", appointment_id)

        logger.info(
            "Ride offer sent for %s to %s (%s)",
            appointment_id,
            mask_phone(contact.phone),
            "proxy" if contact.is_proxy else "patient",
        )
        await self._feed.publish(
            EventType.OFFER_SENT,
            appointment_id,
            {
                "patient_name": patient.full_name,
                "to_proxy": contact.is_proxy,
                "message_id": message.id,
            },
        )
        return message

    def offer_text(
        self, appointment: Appointment, patient: Patient, site: CareSite, contact: Contact
    ) -> str:
        day = format_day(appointment.scheduled_at, self._tz)
        at = format_time(appointment.scheduled_at, self._tz)
        if contact.is_proxy:
            return (
                f"Hi! This is RideKeeper. Your client {patient.full_name} has an appointment "
                f"on {day} at {at} at {site.name}. They may need a free ride. Can you confirm "
                f"they'll be ready for pickup? Reply YES to book the ride."
            )
        return (
            f"Hi {patient.first_name}! You have an appointment on {day} at {at} at "
            f"{site.name}. Need a free ride? Reply YES and we'll send a driver to pick you up."
        )

    # ── Ride notices ─────────────────────────────────────────────

    async def send_reminder(self, ride: RideRecord) -> Message:
        """Pre-pickup reminder; names driver and vehicle when already known."""
        patient, contact = await self._ride_contact(ride)
        body = self.reminder_text(ride, patient, contact)
        message = await self._send(contact.phone, body, ride.appointment_id)
        if message.status is MessageStatus.FAILED:
            raise TransportError(message.error or "SMS send failed")

        await self._feed.publish(
            EventType.REMINDER_SENT,
            ride.appointment_id,
            {"ride_id": ride.id, "patient_name": patient.full_name},
        )
        return message

    async def send_driver_arriving(self, ride: RideRecord) -> Message:
        patient, contact = await self._ride_contact(ride)
        driver = f" {ride.driver_name}" if ride.driver_name else ""
        vehicle = ride.vehicle_info or "vehicle"
        if contact.is_proxy:
            body = (
                f"RideKeeper: the driver{driver} for {patient.full_name} is arriving now "
                f"in a {vehicle} at {ride.pickup_location}."
            )
        else:
            body = f"Your driver{driver} is arriving now in a {vehicle}. Head to {ride.pickup_location}!"
        return await self._send(contact.phone, body, ride.appointment_id)

    def reminder_text(self, ride: RideRecord, patient: Patient, contact: Contact) -> str:
        lead = _lead_time(int((ride.pickup_time - self._clock()).total_seconds() // 60))
        at = format_time(ride.pickup_time, self._tz)
        driver = (
            f" Driver: {ride.driver_name}, {ride.vehicle_info}."
            if ride.driver_name and ride.vehicle_info
            else ""
        )
        if contact.is_proxy:
            return (
                f"Hi {contact.name}! This is RideKeeper. The ride for your client "
                f"{patient.full_name} arrives in {lead} ({at}) at {ride.pickup_location}.{driver} "
                f"Please make sure they're ready for pickup."
            )
        if driver:
            return (
                f"Hi {patient.first_name}! Your ride arrives in {lead} ({at}).{driver} "
                f"Head to {ride.pickup_location}. See you soon!"
            )
        return (
            f"Hi {patient.first_name}! Your ride is scheduled to arrive in "
            f"{lead} at {at}. Be ready at {ride.pickup_location}!"
        )

    def confirmation_text(self, ride: RideRecord) -> str:
        return (
            f"Great! Your ride is confirmed for {format_time(ride.pickup_time, self._tz)}. "
            f"Pickup: {ride.pickup_location}. We'll text you when your driver is nearby. "
            f"See you {self._relative_day(ride.pickup_time)}!"
        )

    async def send_confirmation(self, ride: RideRecord, phone: str) -> Message:
        return await self._send(phone, self.confirmation_text(ride), ride.appointment_id)

    async def send_text(self, phone: str, body: str, appointment_id: str | None = None) -> Message:
        """Free-form reply. Failures are logged on the message, not raised."""
        return await self._send(phone, body, appointment_id)

    # ── Inbound side ─────────────────────────────────────────────

    async def record_inbound(
        self,
        phone: str,
        body: str,
        provider_message_id: str | None = None,
        appointment_id: str | None = None,
    ) -> Message:
        """Log an inbound text.

        Without an explicit ``appointment_id`` the text is associated with the
        appointment last messaged at that number, or with nothing.
        """
        if appointment_id is None:
            last = await self._store.latest_outbound_to(phone)
            appointment_id = last.appointment_id if last else None
        message = Message(
            phone=phone,
            body=body,
            direction=MessageDirection.INBOUND,
            status=MessageStatus.RECEIVED,
            appointment_id=appointment_id,
            provider_message_id=provider_message_id,
            created_at=self._clock(),
        )
        await self._store.add_message(message)
        if message.appointment_id is None:
            logger.info("Inbound SMS from %s matches no appointment", mask_phone(phone))
        return message

    async def update_delivery_status(
        self, provider_message_id: str, status: MessageStatus
    ) -> Message | None:
        message = await self._store.update_message_status(provider_message_id, status)
        if message is None:
            logger.info("Status callback for unknown message %s", provider_message_id)
            return None
        await self._feed.publish(
            EventType.MESSAGE_STATUS_CHANGED,
            message.appointment_id or message.id,
            {
                "message_id": message.id,
                "provider_message_id": provider_message_id,
                "status": status.value,
            },
        )
        return message

    # ── internals ────────────────────────────────────────────────

    def _lock_for(self, appointment_id: str) -> asyncio.Lock:
        lock = self._locks.get(appointment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[appointment_id] = lock
        return lock

    async def _send(self, phone: str, body: str, appointment_id: str | None) -> Message:
        message = Message(
            phone=phone,
            body=body,
            direction=MessageDirection.OUTBOUND,
            status=MessageStatus.PENDING,
            appointment_id=appointment_id,
            created_at=self._clock(),
        )
        await self._store.add_message(message)

        receipt: SendReceipt
        try:
            receipt = await asyncio.wait_for(
                self._transport.send(phone, body, message.id),
                timeout=self._settings.external_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Transport error sending to %s", mask_phone(phone), exc_info=True)
            return await self._store.update_message(
                message.id, status=MessageStatus.FAILED, error=str(exc)[:200] or type(exc).__name__
            )

        if not receipt.accepted:
            logger.warning("SMS to %s rejected: %s", mask_phone(phone), receipt.error)
            return await self._store.update_message(
                message.id, status=MessageStatus.FAILED, error=receipt.error
            )
        return await self._store.update_message(
            message.id,
            status=MessageStatus.SENT,
            provider_message_id=receipt.provider_message_id,
        )

    async def _require_patient(self, appointment: Appointment) -> Patient:
        patient = await self._store.get_patient(appointment.patient_id)
        if patient is None:
            raise NotFoundError(f"Patient {appointment.patient_id} not found")
        return patient

    async def _require_site(self, appointment: Appointment) -> CareSite:
        site = await self._store.get_site(appointment.site_id)
        if site is None:
            raise NotFoundError(f"Care site {appointment.site_id} not found")
        return site

    async def _ride_contact(self, ride: RideRecord) -> tuple[Patient, Contact]:
        appointment = await self._store.get_appointment(ride.appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {ride.appointment_id} not found")
        patient = await self._require_patient(appointment)
        contact = resolve_contact(patient)
        if contact is None:
            raise NoContactError(ride.appointment_id)
        return patient, contact

    def _relative_day(self, moment: datetime) -> str:
        days = (moment.astimezone(self._tz).date() - self._clock().astimezone(self._tz).date()).days
        if days == 0:
            return "today"
        if days == 1:
            return "tomorrow"
        return f"on {format_day(moment, self._tz)}"
