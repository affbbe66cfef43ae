"""Confidence-weighted adjustment of the deterministic risk score.

Wraps ``RiskScorer`` with an optional inference pass. The inference result
is sanitised, cached per appointment and blended into a final score by
confidence. Any failure degrades to the base score; nothing here raises
because the inference provider misbehaved.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from ridekeeper.models import (
    AIAssessment,
    AppointmentStatus,
    CachedAssessment,
    RiskCategory,
    utcnow,
)
from ridekeeper.scoring.risk_scorer import RiskResult, RiskScorer, categorize

if TYPE_CHECKING:
    from collections.abc import Callable

    from ridekeeper.models import Appointment, Message, Patient
    from ridekeeper.settings import Settings
    from ridekeeper.storage.repository import DataStore

__all__ = [
    "AssessmentContext",
    "EnhancedRiskResult",
    "PatientHistory",
    "RiskAssessor",
    "RiskInference",
    "blend",
    "months_before",
    "sanitize_assessment",
]

logger = logging.getLogger(__name__)

FULL_TRUST_CONFIDENCE = 80
PARTIAL_TRUST_CONFIDENCE = 50
MAX_ADJUSTMENT = 20
MAX_LIST_ITEMS = 5
HISTORY_MESSAGES = 10


# ── Inference contract ───────────────────────────────────────────────


@dataclass(frozen=True)
class PatientHistory:
    total_appointments: int = 0
    completed: int = 0
    no_shows: int = 0
    cancelled: int = 0
    last_successful: datetime | None = None
    days_since_last: int | None = None


@dataclass(frozen=True)
class AssessmentContext:
    """Everything the inference provider gets to see for one appointment."""

    patient: Patient
    appointment: Appointment
    base: RiskResult
    history: PatientHistory
    messages: list[Message] = field(default_factory=list)


class RiskInference(Protocol):
    async def assess(self, context: AssessmentContext) -> dict[str, Any]:
        """Return the raw assessment object. Raise on any provider problem."""
        ...


# ── Result ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EnhancedRiskResult:
    base: RiskResult
    final_score: int
    category: RiskCategory
    assessment: AIAssessment | None = None
    is_ai_enhanced: bool = False
    ai_available: bool = False

    @property
    def score(self) -> int:
        return self.base.score

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "score": self.base.score,
            "base_category": self.base.category.value,
            "factors": [f.to_dict() for f in self.base.factors],
            "final_score": self.final_score,
            "category": self.category.value,
            "is_ai_enhanced": self.is_ai_enhanced,
            "ai_available": self.ai_available,
        }
        if self.assessment is not None:
            d["ai_assessment"] = self.assessment.to_dict()
        return d


# ── Pure helpers ─────────────────────────────────────────────────────


def blend(base_score: int, adjusted_score: int, confidence: int) -> int:
    """Blend by confidence: >=80 trust fully, 50-79 average, <50 ignore."""
    if confidence >= FULL_TRUST_CONFIDENCE:
        return adjusted_score
    if confidence >= PARTIAL_TRUST_CONFIDENCE:
        # round-half-up, not banker's rounding
        return int((base_score + adjusted_score) / 2 + 0.5)
    return base_score


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or value is None:
        return default
    try:
        return round(float(value))
    except (TypeError, ValueError):
        return default


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value[:MAX_LIST_ITEMS]]


def sanitize_assessment(raw: dict[str, Any], base_score: int) -> AIAssessment:
    """Coerce a raw provider object into range.

    Missing or zero values take the documented defaults: adjusted score
    falls back to the base score, adjustment to 0, confidence to 50.
    """
    adjusted = _as_int(raw.get("adjusted_score", raw.get("adjustedScore")), 0) or base_score
    adjustment = _as_int(raw.get("adjustment"), 0)
    confidence = _as_int(raw.get("confidence"), 0) or 50
    rationale = raw.get("rationale") or raw.get("reasoning") or "AI assessment completed"
    contact_time = raw.get("optimal_contact_time") or raw.get("optimalContactTime") or "Morning"
    tags = raw.get("risk_tags", raw.get("riskFactors"))
    return AIAssessment(
        adjusted_score=_clamp(adjusted, 0, 100),
        adjustment=_clamp(adjustment, -MAX_ADJUSTMENT, MAX_ADJUSTMENT),
        confidence=_clamp(confidence, 0, 100),
        rationale=str(rationale),
        recommendations=_as_str_list(raw.get("recommendations")),
        risk_tags=_as_str_list(tags),
        optimal_contact_time=str(contact_time),
    )


def months_before(moment: datetime, months: int) -> datetime:
    """Same wall-clock moment ``months`` calendar months earlier (day clamped)."""
    year, month = divmod(moment.month - 1 - months, 12)
    year += moment.year
    month += 1
    day = moment.day
    while True:
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


# ── Assessor ─────────────────────────────────────────────────────────


class RiskAssessor:
    """Base score + optional confidence-weighted inference adjustment."""

    def __init__(
        self,
        store: DataStore,
        settings: Settings,
        inference: RiskInference | None = None,
        scorer: RiskScorer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._inference = inference
        self._scorer = scorer or RiskScorer()
        self._clock = clock
        self.fallback_count = 0

    @property
    def available(self) -> bool:
        return self._settings.inference_enabled and self._inference is not None

    async def base_score(self, patient: Patient) -> RiskResult:
        since = months_before(self._clock(), self._settings.no_show_window_months)
        no_shows = await self._store.count_no_shows(patient.id, since)
        return self._scorer.score(patient, no_shows)

    async def assess(
        self, patient: Patient, appointment: Appointment, *, use_inference: bool = True
    ) -> EnhancedRiskResult:
        base = await self.base_score(patient)
        if not (use_inference and self.available):
            return self._unenhanced(base, available=self.available)

        now = self._clock()
        cached = await self._store.get_cached_assessment(appointment.id)
        if cached is not None and cached.is_valid(now):
            return self._combine(base, cached.assessment)

        try:
            context = await self._build_context(patient, appointment, base)
            raw = await asyncio.wait_for(
                self._inference.assess(context),  # type: ignore[union-attr]
                timeout=self._settings.external_timeout_seconds,
            )
            if not isinstance(raw, dict):
                msg = f"assessment is {type(raw).__name__}, expected object"
                raise TypeError(msg)
            assessment = sanitize_assessment(raw, base.score)
        except Exception:
            self.fallback_count += 1
            logger.warning(
                "Risk inference unavailable for %s, using base score",
                appointment.id,
                exc_info=True,
            )
            return self._unenhanced(base)

        try:
            await self._store.put_cached_assessment(
                CachedAssessment(
                    appointment_id=appointment.id,
                    assessment=assessment,
                    expires_at=now + timedelta(hours=self._settings.assessment_cache_hours),
                )
            )
        except Exception:
            logger.warning("Assessment cache write failed for %s", appointment.id, exc_info=True)

        return self._combine(base, assessment)

    async def invalidate(self, appointment_id: str) -> bool:
        """Drop the cached assessment; new inbound text changes the picture."""
        removed = await self._store.delete_cached_assessment(appointment_id)
        if removed:
            logger.debug("Assessment cache invalidated for %s", appointment_id)
        return removed

    # ── internals ────────────────────────────────────────────────

    @staticmethod
    def _unenhanced(base: RiskResult, *, available: bool = False) -> EnhancedRiskResult:
        return EnhancedRiskResult(
            base=base,
            final_score=base.score,
            category=base.category,
            is_ai_enhanced=False,
            ai_available=available,
        )

    @staticmethod
    def _combine(base: RiskResult, assessment: AIAssessment) -> EnhancedRiskResult:
        final = blend(base.score, assessment.adjusted_score, assessment.confidence)
        return EnhancedRiskResult(
            base=base,
            final_score=final,
            category=categorize(final),
            assessment=assessment,
            is_ai_enhanced=True,
            ai_available=True,
        )

    async def _build_context(
        self, patient: Patient, appointment: Appointment, base: RiskResult
    ) -> AssessmentContext:
        past = await self._store.list_appointments(patient_id=patient.id)
        past = [a for a in past if a.id != appointment.id]
        past.sort(key=lambda a: a.scheduled_at, reverse=True)
        past = past[:20]

        completed = [a for a in past if a.status is AppointmentStatus.COMPLETED]
        last_ok = completed[0].scheduled_at if completed else None
        history = PatientHistory(
            total_appointments=len(past),
            completed=len(completed),
            no_shows=sum(1 for a in past if a.status is AppointmentStatus.NO_SHOW),
            cancelled=sum(1 for a in past if a.status is AppointmentStatus.CANCELLED),
            last_successful=last_ok,
            days_since_last=(self._clock() - last_ok).days if last_ok else None,
        )

        messages: list[Message] = []
        if patient.phone:
            messages = await self._store.list_messages(phone=patient.phone, limit=HISTORY_MESSAGES)
        if not messages:
            messages = await self._store.list_messages(
                appointment_id=appointment.id, limit=HISTORY_MESSAGES
            )

        return AssessmentContext(
            patient=patient,
            appointment=appointment,
            base=base,
            history=history,
            messages=messages,
        )
