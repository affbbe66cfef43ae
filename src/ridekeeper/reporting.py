"""Dashboard figures computed from the data store.

Three views: headline stats for the coming week, today's rides by status,
and the return on rides that got patients to their appointments.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from ridekeeper.models import (
    ACTIVE_APPOINTMENT_STATUSES,
    AppointmentStatus,
    RideStatus,
    RiskCategory,
)
from ridekeeper.scoring.risk_scorer import categorize

if TYPE_CHECKING:
    from ridekeeper.storage.repository import DataStore

__all__ = [
    "DashboardStats",
    "RidesSummary",
    "RideROI",
    "dashboard_stats",
    "rides_summary",
    "ride_roi",
]

UPCOMING_WINDOW = timedelta(days=7)
NO_SHOW_WINDOW = timedelta(days=30)
AVG_RIDE_COST_DEFAULT = 18.0
PREVENTED_NO_SHOW_VALUE = 150.0


def local_day(now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """First and last instant of ``now``'s calendar day in ``tz``."""
    start = datetime.combine(now.astimezone(tz).date(), time.min, tzinfo=tz)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)


# ── Stats ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DashboardStats:
    upcoming_appointments: int
    high_risk_patients: int
    offers_sent: int
    rides_scheduled_today: int
    no_show_rate: int
    no_show_trend: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "upcoming_appointments": self.upcoming_appointments,
            "high_risk_patients": self.high_risk_patients,
            "offers_sent": self.offers_sent,
            "rides_scheduled_today": self.rides_scheduled_today,
            "no_show_rate": self.no_show_rate,
            "no_show_trend": self.no_show_trend,
        }


async def _no_show_rate(store: DataStore, start: datetime, end: datetime) -> float:
    """Percent of closed appointments in ``[start, end)`` that were missed."""
    closed = await store.list_appointments(
        start=start,
        end=end - timedelta(microseconds=1),
        statuses={AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW},
    )
    if not closed:
        return 0.0
    missed = sum(1 for a in closed if a.status is AppointmentStatus.NO_SHOW)
    return missed / len(closed) * 100


async def dashboard_stats(store: DataStore, now: datetime, tz: ZoneInfo) -> DashboardStats:
    upcoming = await store.list_appointments(
        start=now, end=now + UPCOMING_WINDOW, statuses=ACTIVE_APPOINTMENT_STATUSES
    )
    high_risk = [
        a
        for a in upcoming
        if a.effective_score is not None and categorize(a.effective_score) is RiskCategory.HIGH
    ]

    today_start, today_end = local_day(now, tz)
    rides_today = await store.list_rides(
        statuses=set(RideStatus) - {RideStatus.CANCELLED},
        pickup_start=today_start,
        pickup_end=today_end,
    )

    # rolling 30-day windows ending at local midnight
    current = await _no_show_rate(store, today_start - NO_SHOW_WINDOW, today_start)
    previous = await _no_show_rate(
        store, today_start - 2 * NO_SHOW_WINDOW, today_start - NO_SHOW_WINDOW
    )

    return DashboardStats(
        upcoming_appointments=len(upcoming),
        high_risk_patients=len(high_risk),
        offers_sent=sum(1 for a in upcoming if a.offer_sent),
        rides_scheduled_today=len(rides_today),
        no_show_rate=round(current),
        no_show_trend=round(current - previous, 1),
    )


# ── Today's rides ────────────────────────────────────────────────────


@dataclass(frozen=True)
class RidesSummary:
    counts: dict[RideStatus, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheduled": self.counts[RideStatus.SCHEDULED],
            "driver_assigned": self.counts[RideStatus.DRIVER_ASSIGNED],
            "in_progress": self.counts[RideStatus.IN_PROGRESS],
            "completed": self.counts[RideStatus.COMPLETED],
            "cancelled": self.counts[RideStatus.CANCELLED],
            "total": self.total,
        }


async def rides_summary(store: DataStore, now: datetime, tz: ZoneInfo) -> RidesSummary:
    start, end = local_day(now, tz)
    counts = dict.fromkeys(RideStatus, 0)
    for ride in await store.list_rides(pickup_start=start, pickup_end=end):
        counts[ride.status] += 1
    return RidesSummary(counts=counts)


# ── ROI ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RideROI:
    """Completed rides against the no-shows they prevented."""

    completed_rides: int
    appointments_attended: int
    total_ride_cost: float
    avg_ride_cost: float
    prevented_no_show_value: float
    net_savings: float
    roi: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed_rides": self.completed_rides,
            "appointments_attended": self.appointments_attended,
            "total_ride_cost": round(self.total_ride_cost),
            "avg_ride_cost": round(self.avg_ride_cost),
            "prevented_no_show_value": round(self.prevented_no_show_value),
            "net_savings": round(self.net_savings),
            "roi": round(self.roi, 1),
        }


async def ride_roi(store: DataStore) -> RideROI:
    """ROI over every completed ride.

    An appointment counts as attended when it is COMPLETED and its ride
    completed too. Rides without a cost estimate count as zero cost.
    """
    completed = await store.list_rides(statuses={RideStatus.COMPLETED})
    ridden = {ride.appointment_id for ride in completed}
    attended = [
        a
        for a in await store.list_appointments(statuses={AppointmentStatus.COMPLETED})
        if a.id in ridden
    ]

    total_cost = sum(ride.estimated_cost or 0.0 for ride in completed)
    avg_cost = total_cost / len(completed) if completed else AVG_RIDE_COST_DEFAULT
    value = len(attended) * PREVENTED_NO_SHOW_VALUE

    return RideROI(
        completed_rides=len(completed),
        appointments_attended=len(attended),
        total_ride_cost=total_cost,
        avg_ride_cost=avg_cost,
        prevented_no_show_value=value,
        net_savings=value - total_cost,
        roi=value / total_cost if total_cost > 0 else 0.0,
    )
