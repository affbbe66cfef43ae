"""Inbound conversation handling: record → resolve intent → act → reply."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from ridekeeper.conversation.intent import ConversationContext, Intent, IntentResult
from ridekeeper.errors import (
    ConflictError,
    NoContactError,
    NotFoundError,
    ProviderError,
    RideExistsError,
)
from ridekeeper.events import EventType
from ridekeeper.outreach.dispatcher import format_day, format_time, resolve_contact

if TYPE_CHECKING:
    from ridekeeper.conversation.intent import IntentResolver
    from ridekeeper.events import EventFeed
    from ridekeeper.models import Appointment, CareSite, Message, Patient, RideRecord
    from ridekeeper.outreach.dispatcher import OutreachDispatcher
    from ridekeeper.rides.lifecycle import RideLifecycleManager
    from ridekeeper.scoring.adjustment import RiskAssessor
    from ridekeeper.settings import Settings
    from ridekeeper.storage.repository import DataStore

__all__ = ["ReplyHandler", "ReplyOutcome", "answer_question"]

logger = logging.getLogger(__name__)

ALREADY_BOOKED = "You already have a ride booked! We'll text you when your driver is nearby."
DECLINED = "No problem! Let us know if you need anything else. See you at your appointment!"
BOOKING_FAILED = (
    "We couldn't book your ride right now. A coordinator will reach out shortly to arrange it."
)
NOT_ACTIVE = "This appointment is no longer scheduled. Please call your care site if you need help."
COORDINATOR = "I'll have a coordinator reach out to help you. Reply YES if you still need a ride."
UNKNOWN_REPLY = (
    "Sorry, I didn't understand that. Reply YES if you need a free ride to your appointment, "
    "or NO if you have transportation. Questions? A coordinator will reach out shortly."
)


@dataclass(frozen=True)
class ReplyOutcome:
    inbound: Message
    appointment_id: str | None = None
    intent: IntentResult | None = None
    reply: Message | None = None
    ride: RideRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.inbound.id,
            "appointment_id": self.appointment_id,
            "intent": self.intent.to_dict() if self.intent else None,
            "reply": self.reply.body if self.reply else None,
            "ride_id": self.ride.id if self.ride else None,
        }


def answer_question(
    text: str, appointment_when: str, pickup_time: str | None, pickup_location: str | None
) -> str:
    """Keyword answers for the common questions; anything else goes to a human."""
    lowered = text.lower()
    if "time" in lowered or "when" in lowered:
        if pickup_time:
            return f"Your ride is scheduled for pickup at {pickup_time}."
        return f"We'll pick you up in time for your appointment on {appointment_when}."
    if any(word in lowered for word in ("where", "location", "address")):
        if pickup_location:
            return f"Your pickup location is {pickup_location}."
        return "Please let us know your preferred pickup location."
    if any(word in lowered for word in ("cost", "pay", "free")):
        return "The ride is completely free - no cost to you!"
    return COORDINATOR


class ReplyHandler:
    """Turns one inbound text into state changes and at most one reply."""

    def __init__(
        self,
        store: DataStore,
        dispatcher: OutreachDispatcher,
        resolver: IntentResolver,
        assessor: RiskAssessor,
        lifecycle: RideLifecycleManager,
        feed: EventFeed,
        settings: Settings,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._resolver = resolver
        self._assessor = assessor
        self._lifecycle = lifecycle
        self._feed = feed
        self._tz = ZoneInfo(settings.timezone)

    async def handle_inbound(
        self,
        phone: str,
        body: str,
        provider_message_id: str | None = None,
        appointment_id: str | None = None,
    ) -> ReplyOutcome:
        inbound = await self._dispatcher.record_inbound(
            phone, body, provider_message_id, appointment_id=appointment_id
        )
        if inbound.appointment_id is None:
            return ReplyOutcome(inbound=inbound)

        appointment = await self._store.get_appointment(inbound.appointment_id)
        if appointment is None:
            logger.warning("Inbound SMS references missing appointment %s", inbound.appointment_id)
            return ReplyOutcome(inbound=inbound)
        patient = await self._store.get_patient(appointment.patient_id)
        site = await self._store.get_site(appointment.site_id)
        if patient is None or site is None:
            logger.warning("Patient or site missing for appointment %s", appointment.id)
            return ReplyOutcome(inbound=inbound, appointment_id=appointment.id)

        await self._assessor.invalidate(appointment.id)

        when = f"{format_day(appointment.scheduled_at, self._tz)} at {format_time(appointment.scheduled_at, self._tz)}"
        result = await self._resolver.resolve(
            body,
            ConversationContext(
                patient_name=patient.first_name, appointment_time=when, site_name=site.name
            ),
        )
        logger.info(
            "Inbound reply for %s resolved to %s (%.2f, %s)",
            appointment.id,
            result.intent,
            result.confidence,
            result.source,
        )
        await self._feed.publish(
            EventType.MESSAGE_RECEIVED,
            appointment.id,
            {
                "message_id": inbound.id,
                "body": body,
                "intent": result.intent.value,
                "confidence": result.confidence,
                "patient_name": patient.full_name,
            },
        )

        text, ride = await self._act(result, body, appointment, patient, site, when)
        reply = await self._dispatcher.send_text(phone, text, appointment.id)
        return ReplyOutcome(
            inbound=inbound, appointment_id=appointment.id, intent=result, reply=reply, ride=ride
        )

    async def simulate_reply(self, appointment_id: str, body: str = "YES") -> ReplyOutcome:
        """Operator/demo path: treat ``body`` as if the contact had texted it."""
        appointment = await self._store.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        patient = await self._store.get_patient(appointment.patient_id)
        contact = resolve_contact(patient) if patient else None
        if contact is None:
            raise NoContactError(appointment_id)
        return await self.handle_inbound(
            contact.phone,
            body,
            provider_message_id=f"SIMULATED_{uuid.uuid4().hex[:12]}",
            appointment_id=appointment_id,
        )

    # ── intent actions ───────────────────────────────────────────

    async def _act(
        self,
        result: IntentResult,
        body: str,
        appointment: Appointment,
        patient: Patient,
        site: CareSite,
        when: str,
    ) -> tuple[str, RideRecord | None]:
        if result.intent is Intent.CONFIRM:
            return await self._confirm(result, appointment)

        if result.intent is Intent.DECLINE:
            await self._store.update_appointment(
                appointment.id, needs_ride=False, ride_declined=True
            )
            return DECLINED, None

        if result.intent is Intent.RESCHEDULE:
            return (
                f"To reschedule your appointment, please call {site.name} directly. "
                "Would you still like a ride to your current appointment? Reply YES or NO.",
                None,
            )

        if result.intent is Intent.QUESTION:
            ride = await self._store.get_active_ride(appointment.id)
            return (
                answer_question(
                    body,
                    when,
                    format_time(ride.pickup_time, self._tz) if ride else None,
                    ride.pickup_location if ride else None,
                ),
                None,
            )

        return UNKNOWN_REPLY, None

    async def _confirm(
        self, result: IntentResult, appointment: Appointment
    ) -> tuple[str, RideRecord | None]:
        if await self._store.get_active_ride(appointment.id) is not None:
            return ALREADY_BOOKED, None
        try:
            ride = await self._lifecycle.book_ride(
                appointment.id, pickup_location=result.pickup_location
            )
        except RideExistsError:
            return ALREADY_BOOKED, None
        except ProviderError:
            logger.exception("Ride booking failed for %s", appointment.id)
            return BOOKING_FAILED, None
        except ConflictError:
            return NOT_ACTIVE, None
        return self._dispatcher.confirmation_text(ride), ride
