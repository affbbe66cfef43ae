"""Deterministic risk scorer for missed-appointment (transportation) risk.

Rule-based scorer. No ML, every point is traceable to a factor.
Each factor adds whole points; the sum is capped at 100.

Thresholds:
    0  – 30   →  LOW
    31 – 60   →  MEDIUM
    61 – 100  →  HIGH
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ridekeeper.models import HousingStatus, Patient, RiskCategory

__all__ = ["RiskScorer", "RiskResult", "RiskFactor", "categorize"]


@dataclass(frozen=True)
class RiskFactor:
    factor: str
    points: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"factor": self.factor, "points": self.points, "reason": self.reason}


@dataclass(frozen=True)
class RiskResult:
    """Immutable result of a risk assessment."""

    score: int  # 0 – 100
    category: RiskCategory
    factors: list[RiskFactor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "category": self.category.value,
            "factors": [f.to_dict() for f in self.factors],
        }


# ── Points ───────────────────────────────────────────────────────────
HOUSING_POINTS = {
    HousingStatus.HOMELESS: 40,
    HousingStatus.UNSTABLY_HOUSED: 25,
    HousingStatus.HOUSED: 0,
}
DISTANCE_UNKNOWN = 20
DISTANCE_FAR = 30  # > 5 miles
DISTANCE_MID = 20  # 2 – 5 miles
DISTANCE_NEAR = 10  # < 2 miles
NO_PHONE = 25
PER_NO_SHOW = 15
NO_SHOW_CAP = 60
MAX_SCORE = 100


def categorize(score: int) -> RiskCategory:
    if score <= 30:
        return RiskCategory.LOW
    if score <= 60:
        return RiskCategory.MEDIUM
    return RiskCategory.HIGH


class RiskScorer:
    """Deterministic transportation-risk scorer.

    Factors:
        1. Housing status  : homeless +40, unstably housed +25
        2. Distance to site: >5 mi +30, 2-5 mi +20, <2 mi +10, unknown +20
        3. Phone access    : no phone on file +25
        4. No-show history : +15 per no-show in the trailing window, max +60
    """

    def score(self, patient: Patient, recent_no_shows: int = 0) -> RiskResult:
        """Score a patient given the no-show count from the trailing window.

        Pure: the same inputs always yield the same result.
        """
        factors: list[RiskFactor] = []

        # 1 ── Housing ────────────────────────────────────────────
        housing = HOUSING_POINTS.get(patient.housing_status, 0)
        if housing:
            factors.append(
                RiskFactor("Housing Status", housing, _housing_reason(patient.housing_status))
            )

        # 2 ── Distance ───────────────────────────────────────────
        distance = self._distance_points(patient.distance_miles)
        if patient.distance_miles is None:
            reason = "Distance from care site unknown - assuming medium risk"
        else:
            reason = f"Patient is {patient.distance_miles:.1f} miles from care site"
        factors.append(RiskFactor("Distance from Care Site", distance, reason))

        # 3 ── Phone access ───────────────────────────────────────
        if not patient.phone:
            factors.append(
                RiskFactor(
                    "Phone Access",
                    NO_PHONE,
                    "No phone number on file - coordination through proxy contact required",
                )
            )

        # 4 ── No-show history ────────────────────────────────────
        count = max(0, recent_no_shows)
        history = min(count * PER_NO_SHOW, NO_SHOW_CAP)
        if history:
            factors.append(
                RiskFactor("Previous No-Shows", history, f"{count} no-show(s) in the last 6 months")
            )

        total = min(sum(f.points for f in factors), MAX_SCORE)
        return RiskResult(score=total, category=categorize(total), factors=factors)

    # ── helpers ──────────────────────────────────────────────────
    @staticmethod
    def _distance_points(miles: float | None) -> int:
        if miles is None:
            return DISTANCE_UNKNOWN
        if miles > 5:
            return DISTANCE_FAR
        if miles >= 2:
            return DISTANCE_MID
        return DISTANCE_NEAR


def _housing_reason(status: HousingStatus) -> str:
    if status is HousingStatus.HOMELESS:
        return "Patient is currently homeless - high transportation barrier"
    if status is HousingStatus.UNSTABLY_HOUSED:
        return "Patient has unstable housing - moderate transportation barrier"
    return "Patient has stable housing"
