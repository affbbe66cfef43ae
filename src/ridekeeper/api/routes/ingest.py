"""Appointment ingestion from the external scheduling system."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field, field_validator

from ridekeeper.models import (
    Appointment,
    AppointmentStatus,
    CareSite,
    HousingStatus,
    Patient,
    ProxyContact,
)

router = APIRouter()

__all__ = ["router"]

logger = logging.getLogger(__name__)


class ProxyIn(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    organization: str = ""


class PatientIn(BaseModel):
    patient_id: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    last_name: str = ""
    phone: str | None = None
    housing_status: HousingStatus = HousingStatus.HOUSED
    address: str | None = None
    distance_miles: float | None = Field(default=None, ge=0)
    proxies: list[ProxyIn] = []


class SiteIn(BaseModel):
    site_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    latitude: float = 0.0
    longitude: float = 0.0


class AppointmentIn(BaseModel):
    """One appointment with its patient and care site, as exported upstream."""

    appointment_id: str = Field(min_length=1)
    scheduled_at: datetime
    appointment_type: str = ""
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    patient: PatientIn
    site: SiteIn

    @field_validator("scheduled_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("scheduled_at must include a UTC offset")
        return value


class IngestResponse(BaseModel):
    appointment_id: str
    created: bool
    risk: dict[str, Any]
    message: str


@router.post(
    "/ingest",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upsert an appointment and score its no-show risk",
    operation_id="ingest_appointment",
)
async def ingest_appointment(payload: AppointmentIn, request: Request) -> IngestResponse:
    services = request.app.state.services
    store = services.store

    p = payload.patient
    await store.save_patient(
        Patient(
            id=p.patient_id,
            first_name=p.first_name,
            last_name=p.last_name,
            phone=p.phone or None,
            housing_status=p.housing_status,
            address=p.address,
            distance_miles=p.distance_miles,
            proxies=[
                ProxyContact(name=x.name, phone=x.phone, organization=x.organization)
                for x in p.proxies
            ],
        )
    )
    s = payload.site
    await store.save_site(
        CareSite(id=s.site_id, name=s.name, address=s.address, latitude=s.latitude, longitude=s.longitude)
    )

    existing = await store.get_appointment(payload.appointment_id)
    if existing is None:
        appointment = Appointment(
            id=payload.appointment_id,
            patient_id=p.patient_id,
            site_id=s.site_id,
            scheduled_at=payload.scheduled_at,
            appointment_type=payload.appointment_type,
            status=payload.status,
        )
    else:
        # outreach state (scores, offer flag, ride choice) survives re-ingestion
        appointment = replace(
            existing,
            patient_id=p.patient_id,
            site_id=s.site_id,
            scheduled_at=payload.scheduled_at,
            appointment_type=payload.appointment_type,
            status=payload.status,
        )
        if existing.scheduled_at != payload.scheduled_at:
            await services.assessor.invalidate(payload.appointment_id)
    await store.save_appointment(appointment)

    result = await services.orchestrator.calculate_risk(payload.appointment_id)
    logger.info(
        "Ingested appointment %s (%s, risk %s)",
        payload.appointment_id,
        "new" if existing is None else "updated",
        result.category,
    )
    return IngestResponse(
        appointment_id=payload.appointment_id,
        created=existing is None,
        risk=result.to_dict(),
        message=(
            f"Appointment {payload.appointment_id} "
            f"{'created' if existing is None else 'updated'} "
            f"(risk: {result.category.value}, score: {result.final_score})"
        ),
    )
