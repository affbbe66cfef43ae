"""Appointment queries and manual operator actions."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request

from ridekeeper.errors import NotFoundError
from ridekeeper.models import AppointmentStatus

router = APIRouter(prefix="/appointments")

__all__ = ["router"]


@router.get("", summary="List appointments", operation_id="list_appointments")
async def list_appointments(
    request: Request,
    start: datetime | None = None,
    end: datetime | None = None,
    status: list[AppointmentStatus] | None = Query(default=None),  # noqa: B008
) -> dict[str, Any]:
    store = request.app.state.services.store
    appointments = await store.list_appointments(start=start, end=end, statuses=status)
    return {"appointments": [a.to_dict() for a in appointments], "count": len(appointments)}


@router.get("/{appointment_id}", summary="Appointment detail", operation_id="get_appointment")
async def get_appointment(appointment_id: str, request: Request) -> dict[str, Any]:
    store = request.app.state.services.store
    appointment = await store.get_appointment(appointment_id)
    if appointment is None:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    patient = await store.get_patient(appointment.patient_id)
    site = await store.get_site(appointment.site_id)
    ride = await store.get_active_ride(appointment_id)
    messages = await store.list_messages(appointment_id=appointment_id)
    return {
        "appointment": appointment.to_dict(),
        "patient": patient.to_dict() if patient else None,
        "site": {"id": site.id, "name": site.name, "address": site.address} if site else None,
        "ride": ride.to_dict() if ride else None,
        "messages": [m.to_dict() for m in messages],
    }


@router.post(
    "/{appointment_id}/calculate-risk",
    summary="Recalculate no-show risk",
    operation_id="calculate_risk",
)
async def calculate_risk(
    appointment_id: str, request: Request, use_ai: bool = True
) -> dict[str, Any]:
    orchestrator = request.app.state.services.orchestrator
    result = await orchestrator.calculate_risk(appointment_id, use_inference=use_ai)
    return {"appointment_id": appointment_id, **result.to_dict()}


@router.post("/{appointment_id}/offer-ride", summary="Send the ride offer", operation_id="offer_ride")
async def offer_ride(appointment_id: str, request: Request) -> dict[str, Any]:
    message = await request.app.state.services.orchestrator.offer_ride(appointment_id)
    return {"success": True, "message": message.to_dict()}


@router.post(
    "/{appointment_id}/manual-confirm",
    summary="Confirm on the patient's behalf",
    operation_id="manual_confirm",
)
async def manual_confirm(appointment_id: str, request: Request) -> dict[str, Any]:
    appointment = await request.app.state.services.orchestrator.manual_confirm(appointment_id)
    return {"success": True, "appointment": appointment.to_dict()}


@router.post(
    "/{appointment_id}/mark-completed",
    summary="Mark the appointment attended",
    operation_id="mark_completed",
)
async def mark_completed(appointment_id: str, request: Request) -> dict[str, Any]:
    appointment = await request.app.state.services.orchestrator.mark_completed(appointment_id)
    return {"success": True, "appointment": appointment.to_dict()}


@router.post(
    "/{appointment_id}/mark-noshow",
    summary="Mark the appointment missed",
    operation_id="mark_no_show",
)
async def mark_no_show(appointment_id: str, request: Request) -> dict[str, Any]:
    appointment = await request.app.state.services.orchestrator.mark_no_show(appointment_id)
    return {"success": True, "appointment": appointment.to_dict()}
