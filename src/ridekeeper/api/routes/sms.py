"""Twilio webhooks, the message log, operator texts and simulated replies."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse, Response
from twilio.request_validator import RequestValidator  # type: ignore[import-untyped]

from ridekeeper.errors import TransportError
from ridekeeper.logging import mask_phone
from ridekeeper.models import MessageStatus
from ridekeeper.storage.redis import claim_inbound, release_inbound

__all__ = ["router", "STATUS_MAP"]

logger = logging.getLogger(__name__)
router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

STATUS_MAP: dict[str, MessageStatus] = {
    "queued": MessageStatus.SENT,
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.FAILED,
}


class SendSmsIn(BaseModel):
    phone: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=1600)
    appointment_id: str | None = None


class SimulateReplyIn(BaseModel):
    appointment_id: str = Field(min_length=1)
    message: str = Field(default="YES", min_length=1)


async def _form_params(request: Request) -> dict[str, str]:
    """Parse the form body and verify X-Twilio-Signature when a token is set."""
    form = await request.form()
    params: dict[str, str] = {k: str(v) for k, v in form.items()}

    auth_token = request.app.state.settings.twilio_auth_token
    if auth_token:
        signature = request.headers.get("X-Twilio-Signature", "")
        if not RequestValidator(auth_token).validate(str(request.url), params, signature):
            logger.warning("Twilio signature verification failed")
            raise HTTPException(status_code=401, detail="Invalid signature")
    return params


async def _is_duplicate(request: Request, provider_message_id: str) -> bool:
    services = request.app.state.services
    if services.redis_client is not None:
        try:
            return not await asyncio.to_thread(
                claim_inbound, services.redis_client, provider_message_id
            )
        except Exception:
            logger.warning("Redis dedup unavailable, checking message log", exc_info=True)
    return await services.store.find_message_by_provider_id(provider_message_id) is not None


async def _release(request: Request, provider_message_id: str) -> None:
    redis_client = request.app.state.services.redis_client
    if redis_client is None:
        return
    try:
        await asyncio.to_thread(release_inbound, redis_client, provider_message_id)
    except Exception:
        logger.warning(
            "Could not release dedup claim for %s", provider_message_id[:10], exc_info=True
        )


@router.post("/webhook/sms", summary="Inbound SMS from Twilio", operation_id="inbound_sms")
async def inbound_sms(request: Request) -> Response:
    """Handle one inbound text. Replies go out over REST, so the TwiML is empty."""
    params = await _form_params(request)
    phone = params.get("From", "")
    body = params.get("Body", "").strip()
    sid = params.get("MessageSid") or params.get("SmsSid") or ""
    if not phone or not body:
        raise HTTPException(status_code=400, detail="From and Body are required")

    if sid and await _is_duplicate(request, sid):
        logger.info("Duplicate inbound SMS %s ignored", sid[:10])
        return Response(content=EMPTY_TWIML, media_type="application/xml")

    try:
        outcome = await request.app.state.services.replies.handle_inbound(
            phone, body, provider_message_id=sid or None
        )
    except Exception:
        if sid:
            await _release(request, sid)
        raise
    logger.info(
        "Inbound SMS from %s handled (appointment=%s, intent=%s)",
        mask_phone(phone),
        outcome.appointment_id,
        outcome.intent.intent if outcome.intent else None,
    )
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post(
    "/webhook/sms-status",
    summary="Twilio delivery status callback",
    operation_id="sms_status_callback",
)
async def sms_status(request: Request) -> JSONResponse:
    params = await _form_params(request)
    sid = params.get("MessageSid", "")
    raw_status = params.get("MessageStatus", "").lower()
    mapped = STATUS_MAP.get(raw_status)
    if not sid or mapped is None:
        return JSONResponse(
            status_code=200, content={"ignored": True, "reason": "untracked_status"}
        )

    message = await request.app.state.services.dispatcher.update_delivery_status(sid, mapped)
    if message is None:
        return JSONResponse(status_code=200, content={"ignored": True, "reason": "unknown_message"})
    return JSONResponse(status_code=200, content={"accepted": True, "status": mapped.value})


@router.get("/messages", summary="Message log", operation_id="list_messages")
async def list_messages(
    request: Request,
    appointment_id: str | None = None,
    phone: str | None = None,
    limit: int = 50,
) -> dict[str, Any]:
    limit = max(1, min(limit, 500))
    messages = await request.app.state.services.store.list_messages(
        appointment_id=appointment_id, phone=phone, limit=limit
    )
    return {"messages": [m.to_dict() for m in messages], "count": len(messages)}


@router.post(
    "/sms/simulate-reply",
    summary="Process a reply as if the contact had texted it",
    operation_id="simulate_reply",
)
async def simulate_reply(body: SimulateReplyIn, request: Request) -> dict[str, Any]:
    outcome = await request.app.state.services.replies.simulate_reply(
        body.appointment_id, body.message
    )
    return {"success": True, **outcome.to_dict()}


@router.post("/sms/send", summary="Send a free-form text", operation_id="send_sms")
async def send_sms(body: SendSmsIn, request: Request) -> dict[str, Any]:
    """Operator text to any number, logged like every other outbound message."""
    message = await request.app.state.services.dispatcher.send_text(
        body.phone, body.message, body.appointment_id
    )
    if message.status is MessageStatus.FAILED:
        raise TransportError(f"SMS to {mask_phone(body.phone)} failed: {message.error}")
    return {"success": True, "message": message.to_dict()}
