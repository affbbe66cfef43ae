"""Push-event feed: recent history and a server-sent-events stream."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from starlette.responses import StreamingResponse

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ridekeeper.events import EventFeed

router = APIRouter(prefix="/events")

__all__ = ["router"]

KEEPALIVE_SECONDS = 15.0


@router.get("", summary="Recent events, newest first", operation_id="recent_events")
async def recent_events(
    request: Request,
    entity_id: str | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> dict[str, Any]:
    feed = request.app.state.services.feed
    events = await asyncio.to_thread(
        feed.recent, entity_id=entity_id, event_type=event_type, limit=max(1, min(limit, 1000))
    )
    return {"events": events, "count": len(events)}


async def _stream(request: Request, feed: EventFeed) -> AsyncIterator[str]:
    queue = feed.subscribe()
    try:
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except TimeoutError:
                yield ": keep-alive\n\n"
                continue
            data = json.dumps(event.to_dict(), default=str)
            yield f"event: {event.event_type.value}\ndata: {data}\n\n"
    finally:
        feed.unsubscribe(queue)


@router.get("/stream", summary="Live event stream (SSE)", operation_id="stream_events")
async def stream_events(request: Request) -> StreamingResponse:
    return StreamingResponse(
        _stream(request, request.app.state.services.feed), media_type="text/event-stream"
    )
