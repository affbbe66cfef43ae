"""Manual sweep triggers and schedule inspection."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

router = APIRouter(prefix="/scheduler")

__all__ = ["router"]


@router.post("/trigger/{sweep}", summary="Run one sweep now", operation_id="trigger_sweep")
async def trigger(sweep: str, request: Request) -> dict[str, Any]:
    """Runs synchronously; the report says what ran, not that every item succeeded."""
    report = await request.app.state.services.orchestrator.trigger(sweep)
    return {"success": True, "report": report.to_dict()}


@router.get("/jobs", summary="Registered jobs", operation_id="list_jobs")
async def jobs(request: Request) -> dict[str, Any]:
    scheduler = request.app.state.services.scheduler
    return {"running": scheduler.running, "jobs": scheduler.jobs()}
