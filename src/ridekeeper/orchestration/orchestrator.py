"""Orchestrator: the five sweeps plus the manual appointment actions.

Sweeps:
    scoring      active appointments in the next 7 days → risk → store
    offers       HIGH risk, ~24 h out, offer not yet sent → ride offer
    reminders    rides picking up in 2 h – 2 h 30 m, not yet reminded
    status_sync  every non-terminal ride → provider reconciliation
    end_of_day   today's appointments still active after their time → NO_SHOW

Every sweep isolates item failures, serialises with itself, and is safe to
re-run: each item is guarded by a stored flag or a compare-and-set.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from ridekeeper.errors import (
    ConflictError,
    NotFoundError,
    OfferAlreadySentError,
    RideKeeperError,
    ValidationError,
)
from ridekeeper.events import EventType
from ridekeeper.logging import get_logger, new_correlation_id
from ridekeeper.models import (
    ACTIVE_APPOINTMENT_STATUSES,
    ACTIVE_RIDE_STATUSES,
    AppointmentStatus,
    NoShowRecord,
    RiskCategory,
    utcnow,
)
from ridekeeper.orchestration.scheduler import DailyAt, Every

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ridekeeper.events import EventFeed
    from ridekeeper.models import Appointment, Message
    from ridekeeper.orchestration.scheduler import AsyncioScheduler
    from ridekeeper.outreach.dispatcher import OutreachDispatcher
    from ridekeeper.rides.lifecycle import RideLifecycleManager
    from ridekeeper.scoring.adjustment import EnhancedRiskResult, RiskAssessor
    from ridekeeper.settings import Settings
    from ridekeeper.storage.repository import DataStore

__all__ = ["SWEEPS", "Orchestrator", "SweepReport"]

logger = logging.getLogger(__name__)

SWEEPS = ("scoring", "offers", "reminders", "status_sync", "end_of_day")

SCORING_HORIZON = timedelta(days=7)
OFFER_BAND_START = timedelta(hours=24)
OFFER_BAND_END = timedelta(hours=25)
# Catch-up after missed offer runs never reaches closer than this.
OFFER_MIN_LEAD = timedelta(hours=3)
REMINDER_BAND_START = timedelta(hours=2)
REMINDER_BAND_END = timedelta(hours=2, minutes=30)

OFFER_WATERMARK = "offers"


@dataclass
class SweepReport:
    name: str
    started_at: datetime
    considered: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    finished_at: datetime | None = None

    def fail(self, entity_id: str, exc: Exception) -> None:
        self.failed += 1
        code = exc.error_code if isinstance(exc, RideKeeperError) else "INTERNAL_ERROR"
        self.errors.append({"id": entity_id, "error_code": code, "message": str(exc)[:200]})

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "considered": self.considered,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class Orchestrator:
    """Owns the sweeps. Components are injected, nothing is global."""

    def __init__(
        self,
        store: DataStore,
        assessor: RiskAssessor,
        dispatcher: OutreachDispatcher,
        lifecycle: RideLifecycleManager,
        feed: EventFeed,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._assessor = assessor
        self._dispatcher = dispatcher
        self._lifecycle = lifecycle
        self._feed = feed
        self._settings = settings
        self._clock = clock
        self._tz = ZoneInfo(settings.timezone)
        self._sweeps: dict[str, Callable[[SweepReport], Awaitable[None]]] = {
            "scoring": self._score_upcoming,
            "offers": self._send_offers,
            "reminders": self._send_reminders,
            "status_sync": self._sync_rides,
            "end_of_day": self._close_day,
        }
        self._locks = {name: asyncio.Lock() for name in SWEEPS}

        # read by /metrics
        self.sweep_runs: dict[str, int] = dict.fromkeys(SWEEPS, 0)
        self.sweep_item_failures: dict[str, int] = dict.fromkeys(SWEEPS, 0)
        self.last_reports: dict[str, SweepReport] = {}

    # ── Sweep entry points ───────────────────────────────────────

    async def trigger(self, name: str) -> SweepReport:
        """Manual trigger: announce, then run synchronously."""
        if name not in self._sweeps:
            raise ValidationError(f"Unknown sweep: {name}")
        await self._feed.publish(EventType.SWEEP_TRIGGERED, name, {"sweep": name})
        return await self.run_sweep(name)

    async def run_sweep(self, name: str) -> SweepReport:
        sweep = self._sweeps.get(name)
        if sweep is None:
            raise ValidationError(f"Unknown sweep: {name}")

        new_correlation_id()
        log = get_logger(sweep=name)
        async with self._locks[name]:
            report = SweepReport(name=name, started_at=self._clock())
            log.info("sweep_started")
            await sweep(report)
            report.finished_at = self._clock()

        self.sweep_runs[name] += 1
        self.sweep_item_failures[name] += report.failed
        self.last_reports[name] = report
        log.info(
            "sweep_finished",
            considered=report.considered,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
        )
        return report

    def register_defaults(self, scheduler: AsyncioScheduler) -> None:
        """Default cadence, in care-site local time."""
        cadence = {
            "scoring": DailyAt(6, 0, tz=self._tz),
            "offers": Every(timedelta(hours=1), start_hour=8, end_hour=20, tz=self._tz),
            "reminders": Every(timedelta(minutes=30), tz=self._tz),
            "status_sync": Every(timedelta(minutes=5), tz=self._tz),
            "end_of_day": DailyAt(20, 0, tz=self._tz),
        }
        for name, spec in cadence.items():
            scheduler.register_recurring(name, spec, self._job(name))

    def _job(self, name: str) -> Callable[[], Awaitable[SweepReport]]:
        async def run() -> SweepReport:
            return await self.run_sweep(name)

        return run

    # ── Sweeps ───────────────────────────────────────────────────

    async def _score_upcoming(self, report: SweepReport) -> None:
        now = self._clock()
        appointments = await self._store.list_appointments(
            start=now, end=now + SCORING_HORIZON, statuses=ACTIVE_APPOINTMENT_STATUSES
        )
        for appointment in appointments:
            report.considered += 1
            try:
                await self._score(appointment)
            except Exception as exc:
                logger.exception("Scoring failed for %s", appointment.id)
                report.fail(appointment.id, exc)
            else:
                report.succeeded += 1

    async def _send_offers(self, report: SweepReport) -> None:
        now = self._clock()
        band_end = now + OFFER_BAND_END
        band_start = now + OFFER_BAND_START
        watermark = await self._store.get_watermark(OFFER_WATERMARK)
        if watermark is not None and watermark < band_start:
            band_start = max(watermark, now + OFFER_MIN_LEAD)

        appointments = await self._store.list_appointments(
            start=band_start, end=band_end, statuses=ACTIVE_APPOINTMENT_STATUSES
        )
        for appointment in appointments:
            if appointment.offer_sent:
                continue
            report.considered += 1
            try:
                if appointment.risk_category is None:
                    result = await self._score(appointment)
                    category = result.category
                else:
                    category = appointment.risk_category
                if category is not RiskCategory.HIGH:
                    report.skipped += 1
                    continue
                await self._dispatcher.send_offer(appointment.id)
            except OfferAlreadySentError:
                report.skipped += 1
            except Exception as exc:
                logger.warning("Offer failed for %s: %s", appointment.id, exc)
                report.fail(appointment.id, exc)
            else:
                report.succeeded += 1

        if watermark is None or band_end > watermark:
            await self._store.set_watermark(OFFER_WATERMARK, band_end)

    async def _send_reminders(self, report: SweepReport) -> None:
        now = self._clock()
        rides = await self._store.list_rides(
            statuses=ACTIVE_RIDE_STATUSES,
            pickup_start=now + REMINDER_BAND_START,
            pickup_end=now + REMINDER_BAND_END,
        )
        for ride in rides:
            report.considered += 1
            if ride.reminder_sent_at is not None:
                report.skipped += 1
                continue
            try:
                await self._dispatcher.send_reminder(ride)
                await self._lifecycle.record_reminder(ride.id, self._clock())
            except Exception as exc:
                logger.warning("Reminder failed for ride %s: %s", ride.id, exc)
                report.fail(ride.id, exc)
            else:
                report.succeeded += 1

    async def _sync_rides(self, report: SweepReport) -> None:
        rides = await self._store.list_rides(statuses=ACTIVE_RIDE_STATUSES)
        for ride in rides:
            report.considered += 1
            try:
                changed = await self._lifecycle.reconcile(ride)
            except Exception as exc:
                logger.warning("Reconciliation failed for ride %s: %s", ride.id, exc)
                report.fail(ride.id, exc)
                continue
            if changed:
                report.succeeded += 1
            else:
                report.skipped += 1

    async def _close_day(self, report: SweepReport) -> None:
        # no lower bound; appointments after tonight's run are caught by the next one
        appointments = await self._store.list_appointments(
            end=self._clock(), statuses=ACTIVE_APPOINTMENT_STATUSES
        )
        for appointment in appointments:
            report.considered += 1
            try:
                if await self._record_no_show(appointment):
                    report.succeeded += 1
                else:
                    report.skipped += 1
            except Exception as exc:
                logger.exception("No-show reconciliation failed for %s", appointment.id)
                report.fail(appointment.id, exc)

    # ── Manual appointment actions ───────────────────────────────

    async def calculate_risk(
        self, appointment_id: str, use_inference: bool = True
    ) -> EnhancedRiskResult:
        appointment = await self._require_appointment(appointment_id)
        return await self._score(appointment, use_inference=use_inference)

    async def offer_ride(self, appointment_id: str) -> Message:
        return await self._dispatcher.send_offer(appointment_id)

    async def manual_confirm(self, appointment_id: str) -> Appointment:
        """Operator confirmation (phone call etc.): CONFIRMED and needs a ride."""
        appointment = await self._require_appointment(appointment_id)
        if not appointment.is_active:
            raise ConflictError(
                f"Appointment {appointment_id} is {appointment.status.value}; cannot confirm"
            )
        await self._set_status(appointment, {AppointmentStatus.SCHEDULED}, AppointmentStatus.CONFIRMED)
        return await self._store.update_appointment(
            appointment_id, needs_ride=True, ride_declined=False
        )

    async def mark_completed(self, appointment_id: str) -> Appointment:
        appointment = await self._require_appointment(appointment_id)
        if not await self._set_status(
            appointment, ACTIVE_APPOINTMENT_STATUSES, AppointmentStatus.COMPLETED
        ):
            raise ConflictError(
                f"Appointment {appointment_id} is {appointment.status.value}; cannot complete"
            )
        return await self._require_appointment(appointment_id)

    async def mark_no_show(self, appointment_id: str) -> Appointment:
        appointment = await self._require_appointment(appointment_id)
        if not await self._record_no_show(appointment):
            raise ConflictError(
                f"Appointment {appointment_id} is {appointment.status.value}; cannot mark no-show"
            )
        return await self._require_appointment(appointment_id)

    # ── internals ────────────────────────────────────────────────

    async def _score(
        self, appointment: Appointment, *, use_inference: bool = True
    ) -> EnhancedRiskResult:
        patient = await self._store.get_patient(appointment.patient_id)
        if patient is None:
            raise NotFoundError(f"Patient {appointment.patient_id} not found")

        result = await self._assessor.assess(patient, appointment, use_inference=use_inference)
        changes: dict[str, Any] = {
            "risk_score": result.base.score,
            "final_score": result.final_score,
            "risk_category": result.category,
        }
        if result.assessment is not None:
            changes.update(
                ai_score=result.assessment.adjusted_score,
                ai_confidence=result.assessment.confidence,
                ai_rationale=result.assessment.rationale,
                ai_recommendations=list(result.assessment.recommendations),
                ai_risk_tags=list(result.assessment.risk_tags),
            )
        if result.category is RiskCategory.HIGH and not appointment.ride_declined:
            changes["needs_ride"] = True
        await self._store.update_appointment(appointment.id, **changes)

        await self._feed.publish(
            EventType.RISK_RECALCULATED,
            appointment.id,
            {
                "patient_name": patient.full_name,
                "score": result.base.score,
                "final_score": result.final_score,
                "category": result.category.value,
                "is_ai_enhanced": result.is_ai_enhanced,
            },
        )
        return result

    async def _record_no_show(self, appointment: Appointment) -> bool:
        if not await self._set_status(
            appointment, ACTIVE_APPOINTMENT_STATUSES, AppointmentStatus.NO_SHOW
        ):
            return False
        await self._store.add_no_show(
            NoShowRecord(
                patient_id=appointment.patient_id,
                appointment_id=appointment.id,
                occurred_at=appointment.scheduled_at,
            )
        )
        logger.info("Appointment %s marked no-show", appointment.id)
        return True

    async def _set_status(
        self,
        appointment: Appointment,
        expected: set[AppointmentStatus] | frozenset[AppointmentStatus],
        new: AppointmentStatus,
    ) -> bool:
        if not await self._store.transition_appointment_status(appointment.id, expected, new):
            return False
        await self._feed.publish(
            EventType.APPOINTMENT_STATUS_CHANGED,
            appointment.id,
            {"old_status": appointment.status.value, "status": new.value},
        )
        return True

    async def _require_appointment(self, appointment_id: str) -> Appointment:
        appointment = await self._store.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appointment
