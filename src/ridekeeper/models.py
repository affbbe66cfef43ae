"""Domain records: patients, appointments, rides, messages."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

__all__ = [
    "ACTIVE_APPOINTMENT_STATUSES",
    "ACTIVE_RIDE_STATUSES",
    "HousingStatus",
    "AppointmentStatus",
    "RideStatus",
    "MessageDirection",
    "MessageStatus",
    "RiskCategory",
    "ProxyContact",
    "Patient",
    "CareSite",
    "Appointment",
    "RideRecord",
    "Message",
    "NoShowRecord",
    "AIAssessment",
    "CachedAssessment",
    "new_id",
    "utcnow",
]


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(UTC)


class HousingStatus(StrEnum):
    HOUSED = "HOUSED"
    UNSTABLY_HOUSED = "UNSTABLY_HOUSED"
    HOMELESS = "HOMELESS"


class AppointmentStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"


ACTIVE_APPOINTMENT_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


class RideStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RideStatus.COMPLETED, RideStatus.CANCELLED)


ACTIVE_RIDE_STATUSES = frozenset(
    {RideStatus.SCHEDULED, RideStatus.DRIVER_ASSIGNED, RideStatus.IN_PROGRESS}
)


class MessageDirection(StrEnum):
    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"


class MessageStatus(StrEnum):
    PENDING = "PENDING"  # logged, transport not yet attempted
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"
    RECEIVED = "RECEIVED"


class RiskCategory(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass
class ProxyContact:
    """Caseworker or other third party who receives outreach for a patient."""

    name: str
    phone: str
    organization: str = ""
    id: str = field(default_factory=lambda: new_id("PRX"))


@dataclass
class Patient:
    id: str
    first_name: str
    last_name: str
    phone: str | None = None
    housing_status: HousingStatus = HousingStatus.HOUSED
    address: str | None = None
    distance_miles: float | None = None
    proxies: list[ProxyContact] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.full_name,
            "phone": self.phone,
            "housing_status": self.housing_status.value,
            "address": self.address,
            "distance_miles": self.distance_miles,
            "proxies": [
                {"name": p.name, "phone": p.phone, "organization": p.organization}
                for p in self.proxies
            ],
        }


@dataclass
class CareSite:
    id: str
    name: str
    address: str
    latitude: float = 0.0
    longitude: float = 0.0


@dataclass
class Appointment:
    id: str
    patient_id: str
    site_id: str
    scheduled_at: datetime
    appointment_type: str = ""
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    risk_score: int | None = None
    final_score: int | None = None
    risk_category: RiskCategory | None = None
    ai_score: int | None = None
    ai_confidence: int | None = None
    ai_rationale: str | None = None
    ai_recommendations: list[str] = field(default_factory=list)
    ai_risk_tags: list[str] = field(default_factory=list)
    offer_sent: bool = False
    offer_sent_at: datetime | None = None
    needs_ride: bool = False
    ride_declined: bool = False
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_APPOINTMENT_STATUSES

    @property
    def effective_score(self) -> int | None:
        return self.final_score if self.final_score is not None else self.risk_score

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "site_id": self.site_id,
            "scheduled_at": self.scheduled_at.isoformat(),
            "appointment_type": self.appointment_type,
            "status": self.status.value,
            "risk_score": self.risk_score,
            "final_score": self.final_score,
            "risk_category": self.risk_category.value if self.risk_category else None,
            "ai_score": self.ai_score,
            "ai_confidence": self.ai_confidence,
            "ai_rationale": self.ai_rationale,
            "ai_recommendations": list(self.ai_recommendations),
            "ai_risk_tags": list(self.ai_risk_tags),
            "offer_sent": self.offer_sent,
            "offer_sent_at": self.offer_sent_at.isoformat() if self.offer_sent_at else None,
            "needs_ride": self.needs_ride,
            "ride_declined": self.ride_declined,
        }


@dataclass
class RideRecord:
    appointment_id: str
    pickup_location: str
    dropoff_location: str
    pickup_time: datetime
    status: RideStatus = RideStatus.SCHEDULED
    provider_ride_id: str | None = None
    provider_status: str | None = None
    estimated_cost: float | None = None
    driver_name: str | None = None
    vehicle_info: str | None = None
    driver_latitude: float | None = None
    driver_longitude: float | None = None
    eta_minutes: int | None = None
    reminder_sent_at: datetime | None = None
    id: str = field(default_factory=lambda: new_id("RIDE"))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "status": self.status.value,
            "provider_status": self.provider_status,
            "provider_ride_id": self.provider_ride_id,
            "pickup_location": self.pickup_location,
            "dropoff_location": self.dropoff_location,
            "pickup_time": self.pickup_time.isoformat(),
            "estimated_cost": self.estimated_cost,
            "driver_name": self.driver_name,
            "vehicle_info": self.vehicle_info,
            "driver_location": (
                {"lat": self.driver_latitude, "lng": self.driver_longitude}
                if self.driver_latitude is not None and self.driver_longitude is not None
                else None
            ),
            "eta_minutes": self.eta_minutes,
            "reminder_sent_at": self.reminder_sent_at.isoformat() if self.reminder_sent_at else None,
        }


@dataclass
class Message:
    phone: str
    body: str
    direction: MessageDirection
    status: MessageStatus
    appointment_id: str | None = None
    provider_message_id: str | None = None
    error: str | None = None
    id: str = field(default_factory=lambda: new_id("MSG"))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "direction": self.direction.value,
            "status": self.status.value,
            "body": self.body,
            "provider_message_id": self.provider_message_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class NoShowRecord:
    patient_id: str
    appointment_id: str
    occurred_at: datetime
    id: str = field(default_factory=lambda: new_id("NS"))


@dataclass(frozen=True)
class AIAssessment:
    """Sanitised output of the risk-adjustment inference pass."""

    adjusted_score: int  # 0 – 100
    adjustment: int  # clamped to ±20 of the base score
    confidence: int  # 0 – 100
    rationale: str
    recommendations: list[str] = field(default_factory=list)  # at most 5
    risk_tags: list[str] = field(default_factory=list)  # at most 5
    optimal_contact_time: str = "Morning"

    def to_dict(self) -> dict[str, Any]:
        return {
            "adjusted_score": self.adjusted_score,
            "adjustment": self.adjustment,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "recommendations": list(self.recommendations),
            "risk_tags": list(self.risk_tags),
            "optimal_contact_time": self.optimal_contact_time,
        }


@dataclass(frozen=True)
class CachedAssessment:
    appointment_id: str
    assessment: AIAssessment
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at
