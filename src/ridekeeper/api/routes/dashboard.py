"""Operator dashboard: headline stats, today's rides, ride ROI."""

from __future__ import annotations

from typing import Any
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Request

from ridekeeper.reporting import dashboard_stats, ride_roi, rides_summary

router = APIRouter(prefix="/dashboard")

__all__ = ["router"]


@router.get("/stats", summary="Headline stats for the coming week", operation_id="dashboard_stats")
async def stats(request: Request) -> dict[str, Any]:
    services = request.app.state.services
    result = await dashboard_stats(
        services.store, services.clock(), ZoneInfo(services.settings.timezone)
    )
    return {"success": True, "stats": result.to_dict()}


@router.get(
    "/rides-summary",
    summary="Today's rides by status",
    operation_id="dashboard_rides_summary",
)
async def summary(request: Request) -> dict[str, Any]:
    services = request.app.state.services
    result = await rides_summary(
        services.store, services.clock(), ZoneInfo(services.settings.timezone)
    )
    return {"success": True, "summary": result.to_dict()}


@router.get("/roi", summary="Return on completed rides", operation_id="dashboard_roi")
async def roi(request: Request) -> dict[str, Any]:
    result = await ride_roi(request.app.state.services.store)
    return {"success": True, "roi": result.to_dict()}
