"""Ride booking, inspection and operator overrides."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, Field

from ridekeeper.errors import NotFoundError
from ridekeeper.models import RideStatus

router = APIRouter(prefix="/rides")

__all__ = ["router"]


class BookRideIn(BaseModel):
    appointment_id: str = Field(min_length=1)
    pickup_location: str | None = None
    pickup_time: datetime | None = None


class UpdateStatusIn(BaseModel):
    status: str = Field(min_length=1, description="Provider status vocabulary, e.g. en_route")


@router.post(
    "/book",
    status_code=status.HTTP_201_CREATED,
    summary="Book a ride for an appointment",
    operation_id="book_ride",
)
async def book_ride(body: BookRideIn, request: Request) -> dict[str, Any]:
    lifecycle = request.app.state.services.lifecycle
    ride = await lifecycle.book_ride(
        body.appointment_id, pickup_location=body.pickup_location, pickup_time=body.pickup_time
    )
    return {"success": True, "ride": ride.to_dict()}


@router.get("", summary="List rides", operation_id="list_rides")
async def list_rides(
    request: Request,
    status: list[RideStatus] | None = Query(default=None),  # noqa: B008
) -> dict[str, Any]:
    rides = await request.app.state.services.store.list_rides(statuses=status)
    return {"rides": [r.to_dict() for r in rides], "count": len(rides)}


@router.get("/{ride_id}", summary="Ride detail with live provider status", operation_id="get_ride")
async def get_ride(ride_id: str, request: Request) -> dict[str, Any]:
    services = request.app.state.services
    ride = await services.store.get_ride(ride_id)
    if ride is None:
        raise NotFoundError(f"Ride {ride_id} not found")
    live = await services.lifecycle.live_status(ride)
    return {
        "ride": ride.to_dict(),
        "live": (
            {
                "status": live.status,
                "driver": (
                    {"name": live.driver.name, "vehicle": live.driver.vehicle_info}
                    if live.driver
                    else None
                ),
                "eta_minutes": live.eta_minutes,
                "current_location": (
                    {"lat": live.current_location[0], "lng": live.current_location[1]}
                    if live.current_location
                    else None
                ),
            }
            if live
            else None
        ),
    }


@router.post("/{ride_id}/cancel", summary="Cancel a ride", operation_id="cancel_ride")
async def cancel_ride(ride_id: str, request: Request) -> dict[str, Any]:
    ride = await request.app.state.services.lifecycle.cancel_ride(ride_id)
    return {"success": True, "ride": ride.to_dict()}


@router.post(
    "/{ride_id}/update-status",
    summary="Operator status override",
    operation_id="update_ride_status",
)
async def update_status(ride_id: str, body: UpdateStatusIn, request: Request) -> dict[str, Any]:
    ride = await request.app.state.services.lifecycle.force_status(ride_id, body.status)
    return {"success": True, "ride": ride.to_dict()}
