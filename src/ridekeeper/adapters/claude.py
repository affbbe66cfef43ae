"""Anthropic inference adapter for risk adjustment and intent classification.

Both calls must answer with one JSON object. Anything else (transport
error, non-text block, prose, malformed JSON) raises ``InferenceError`` and
the caller falls back to its deterministic path.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

from anthropic import APIError, AsyncAnthropic

from ridekeeper.errors import InferenceError

if TYPE_CHECKING:
    from ridekeeper.conversation.intent import ConversationContext
    from ridekeeper.scoring.adjustment import AssessmentContext

__all__ = ["ClaudeInference", "parse_json_object"]

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")

INTENT_SYSTEM_PROMPT = """You classify SMS replies from patients who were offered a free ride to a medical appointment.

Intents:
- CONFIRM: wants the ride (yes, ok, sure, sounds good)
- DECLINE: does not need the ride (no, I have a ride, my friend is taking me)
- RESCHEDULE: wants to change the appointment or pickup time
- QUESTION: asks something about the ride or appointment
- UNKNOWN: intent cannot be determined

Also extract pickup_location when they name a different pickup place and
preferred_time when they name a pickup time.

Answer with JSON only:
{"intent": "CONFIRM|DECLINE|RESCHEDULE|QUESTION|UNKNOWN", "confidence": 0.0-1.0,
 "pickup_location": "string or null", "preferred_time": "string or null",
 "reasoning": "short explanation"}"""


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object, tolerating a surrounding markdown code fence."""
    cleaned = _FENCE.sub("", text.strip()).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise InferenceError(f"Inference returned non-JSON output: {e}") from e
    if not isinstance(parsed, dict):
        raise InferenceError("Inference returned JSON that is not an object")
    return parsed


class ClaudeInference:
    """Implements both ``RiskInference`` and ``IntentInference``."""

    def __init__(
        self,
        api_key: str,
        risk_model: str = "claude-sonnet-4-20250514",
        intent_model: str = "claude-3-haiku-20240307",
        client: AsyncAnthropic | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("Anthropic API key is required")
        self._client = client or AsyncAnthropic(api_key=api_key)
        self._risk_model = risk_model
        self._intent_model = intent_model

    async def assess(self, context: AssessmentContext) -> dict[str, Any]:
        text = await self._complete(self._risk_model, _risk_prompt(context), max_tokens=500)
        return parse_json_object(text)

    async def classify(
        self, text: str, context: ConversationContext | None = None
    ) -> dict[str, Any]:
        prompt = f'Patient\'s SMS reply: "{text}"\n\nClassify this reply.'
        if context is not None:
            prompt = (
                f"Context: patient {context.patient_name or 'unknown'} has an appointment at "
                f"{context.site_name or 'the care site'} on {context.appointment_time or 'an upcoming date'}.\n\n"
                + prompt
            )
        answer = await self._complete(
            self._intent_model, prompt, max_tokens=200, system=INTENT_SYSTEM_PROMPT
        )
        return parse_json_object(answer)

    async def close(self) -> None:
        await self._client.close()

    async def _complete(
        self, model: str, prompt: str, *, max_tokens: int, system: str | None = None
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        try:
            response = await self._client.messages.create(**kwargs)
        except APIError as e:
            raise InferenceError(f"Anthropic API call failed: {e}") from e

        if not response.content or getattr(response.content[0], "type", None) != "text":
            raise InferenceError("Anthropic response has no text block")
        return str(response.content[0].text)


def _risk_prompt(ctx: AssessmentContext) -> str:
    patient, appt, base, history = ctx.patient, ctx.appointment, ctx.base, ctx.history
    messages = "\n".join(
        f"[{m.created_at:%A %I %p}] {m.direction.value}: \"{m.body[:200]}\"" for m in ctx.messages
    )
    factors = "\n".join(f"- {f.factor}: +{f.points} points ({f.reason})" for f in base.factors)
    distance = f"{patient.distance_miles} miles" if patient.distance_miles is not None else "Unknown"
    last_ok = history.last_successful.date().isoformat() if history.last_successful else "Never"
    return f"""You assess how likely a patient is to miss an upcoming medical appointment.

Patient:
- Housing status: {patient.housing_status.value}
- Distance from care site: {distance}
- Phone on file: {"Yes" if patient.phone else "No (reached through a proxy contact)"}

Appointment history:
- Past appointments: {history.total_appointments}
- Completed: {history.completed}
- No-shows: {history.no_shows}
- Cancelled: {history.cancelled}
- Last completed: {last_ok}
- Days since last completed: {history.days_since_last if history.days_since_last is not None else "N/A"}

Recent messages:
{messages or "No messages yet"}

Upcoming appointment:
- When: {appt.scheduled_at:%A, %B %d %H:%M} UTC
- Type: {appt.appointment_type or "unspecified"}

Rule-based score: {base.score}/100 ({base.category.value})
{factors}

Consider responsiveness, barriers stated in messages, day/time patterns,
engagement and housing stability.

Answer with JSON only, no prose:
{{"adjusted_score": <0-100>, "adjustment": <-20..20 relative to the rule-based score>,
 "confidence": <0-100>, "rationale": "<2-3 sentences>",
 "recommendations": ["<action>", "<action>", "<action>"],
 "optimal_contact_time": "<e.g. Morning before 10 AM>",
 "risk_tags": ["<factor>", "<factor>"]}}"""
