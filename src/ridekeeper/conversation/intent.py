"""Two-tier intent resolution for inbound SMS replies.

Tier 1 is a deterministic pattern pass. Unambiguous replies (confidence
>= 0.9) return immediately and never reach the inference provider. Anything
else goes to the provider when one is configured; any provider failure
falls back to the tier-1 result.

Pattern priority (first match wins):
    confirm → decline → reschedule → question → pickup location → time → unknown
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ridekeeper.settings import Settings

__all__ = [
    "ConversationContext",
    "Intent",
    "IntentInference",
    "IntentResolver",
    "IntentResult",
    "classify_by_rules",
    "normalize",
]

logger = logging.getLogger(__name__)

SHORT_CIRCUIT_CONFIDENCE = 0.9


class Intent(StrEnum):
    CONFIRM = "CONFIRM"
    DECLINE = "DECLINE"
    RESCHEDULE = "RESCHEDULE"
    QUESTION = "QUESTION"
    UNKNOWN = "UNKNOWN"


# Provider vocabulary aliases
_INTENT_ALIASES = {
    "CONFIRM_RIDE": Intent.CONFIRM,
    "DECLINE_RIDE": Intent.DECLINE,
}


@dataclass(frozen=True)
class IntentResult:
    intent: Intent
    confidence: float
    pickup_location: str | None = None
    preferred_time: str | None = None
    reasoning: str | None = None
    source: str = "rules"  # "rules" | "inference"

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent.value,
            "confidence": self.confidence,
            "pickup_location": self.pickup_location,
            "preferred_time": self.preferred_time,
            "reasoning": self.reasoning,
            "source": self.source,
        }


@dataclass(frozen=True)
class ConversationContext:
    patient_name: str | None = None
    appointment_time: str | None = None
    site_name: str | None = None


class IntentInference(Protocol):
    async def classify(
        self, text: str, context: ConversationContext | None = None
    ) -> dict[str, Any]:
        """Return the raw classification object. Raise on any provider problem."""
        ...


# ── Patterns ─────────────────────────────────────────────────────────

_CONFIRM = [
    re.compile(p)
    for p in (
        r"^y$",
        r"^yes$",
        r"^yeah$",
        r"^yep$",
        r"^yup$",
        r"^ok$",
        r"^okay$",
        r"^sure$",
        r"^sounds good$",
        r"^please$",
        r"^yes please$",
        r"^i need a ride$",
        r"^i want a ride$",
        r"^book it$",
        r"^lets do it$",
        r"^let's do it$",
        r"^definitely$",
        r"^absolutely$",
        "^\N{THUMBS UP SIGN}$",
    )
]

# Optional "no" / "no thanks" lead-in, as in "no my friend is taking me"
_NEG = r"^(?:(?:no|nope|nah) )?(?:(?:thanks|thank you) )?"

_DECLINE = [
    re.compile(p)
    for p in (
        r"^(?:no|nope|nah|n)$",
        r"^no (?:thanks|thank you)$",
        _NEG + r"(?:i have|i've got|i got|got) a ride",
        _NEG + r"(?:i )?don'?t need",
        _NEG + r"i'?m (?:good|ok|okay|fine)$",
        _NEG
        + r"my (?:friend|family|wife|husband|son|daughter|mom|dad|brother|sister|partner)"
        r" (?:is|will|'s) (?:take|taking|drive|driving|pick)",
        _NEG + r"someone(?: else)? (?:is|will|'s) (?:take|taking|drive|driving|pick)",
        _NEG + r"i (?:can|will|'ll) (?:get|take|drive) (?:there|myself)",
        r"^cancel$",
        "^\N{THUMBS DOWN SIGN}$",
    )
]

_RESCHEDULE = [
    re.compile(p)
    for p in (
        r"reschedule",
        r"change (?:the )?(?:time|date|appointment)",
        r"different (?:time|day|date)",
        r"can'?t make it",
        r"move (?:the )?(?:appointment|time)",
        r"not (?:that|this) (?:time|day|date)",
        r"\binstead\b",
    )
]

_QUESTION = [
    re.compile(p)
    for p in (
        r"\?$",
        r"^(?:what|when|where|who|how|why|which|is|are|can|will|do|does)\b",
        r"^(?:tell me|let me know)\b",
    )
]

_PICKUP_LOCATION = re.compile(r"pick(?: me)? up (?:at|from) (.+)", re.IGNORECASE)
_TIME = re.compile(r"\b(?:at|around|by) (\d{1,2}(?::\d{2})?\s*(?:am|pm)?)", re.IGNORECASE)
# sentence-ending marks only: punctuation inside a token ("$4.50", "e.g") stays
_PUNCT = re.compile(r"[!?.,]+(?=\s|$)")
_SPACES = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, strip punctuation that ends a word or the text, collapse whitespace."""
    cleaned = _PUNCT.sub("", text.lower().strip())
    return _SPACES.sub(" ", cleaned).strip()


def _extract_time(text: str) -> str | None:
    m = _TIME.search(text)
    return m.group(1).strip() if m else None


def classify_by_rules(text: str) -> IntentResult:
    """Deterministic tier. Pure function of the text."""
    lowered = _SPACES.sub(" ", text.lower().strip())
    cleaned = normalize(text)

    if not cleaned:
        return IntentResult(Intent.UNKNOWN, 0.3)

    if any(p.search(cleaned) for p in _CONFIRM):
        return IntentResult(Intent.CONFIRM, 0.95)

    if any(p.search(cleaned) for p in _DECLINE):
        return IntentResult(Intent.DECLINE, 0.95)

    if any(p.search(cleaned) for p in _RESCHEDULE):
        return IntentResult(Intent.RESCHEDULE, 0.8, preferred_time=_extract_time(text))

    if any(p.search(lowered) for p in _QUESTION):
        return IntentResult(Intent.QUESTION, 0.7)

    location = _PICKUP_LOCATION.search(text)
    if location:
        where = location.group(1).strip().rstrip("!.")
        return IntentResult(Intent.CONFIRM, 0.85, pickup_location=where)

    when = _extract_time(text)
    if when:
        return IntentResult(Intent.CONFIRM, 0.7, preferred_time=when)

    return IntentResult(Intent.UNKNOWN, 0.3)


# ── Resolver ─────────────────────────────────────────────────────────


def _parse_inference(raw: dict[str, Any]) -> IntentResult:
    label = str(raw.get("intent", "")).strip().upper()
    intent = _INTENT_ALIASES.get(label) or Intent(label)  # ValueError on unknown labels

    confidence = float(raw.get("confidence", 0.0))
    if confidence > 1.0:  # provider answered on a 0-100 scale
        confidence /= 100.0
    confidence = max(0.0, min(1.0, confidence))

    location = raw.get("pickup_location") or raw.get("alternativePickupLocation")
    preferred = raw.get("preferred_time") or raw.get("preferredTime")
    return IntentResult(
        intent=intent,
        confidence=confidence,
        pickup_location=str(location) if location else None,
        preferred_time=str(preferred) if preferred else None,
        reasoning=raw.get("reasoning"),
        source="inference",
    )


class IntentResolver:
    """Rules first, inference for the ambiguous remainder."""

    def __init__(self, settings: Settings, inference: IntentInference | None = None) -> None:
        self._settings = settings
        self._inference = inference
        self.fallback_count = 0

    @property
    def available(self) -> bool:
        return self._settings.inference_enabled and self._inference is not None

    async def resolve(
        self, text: str, context: ConversationContext | None = None
    ) -> IntentResult:
        ruled = classify_by_rules(text)
        if ruled.confidence >= SHORT_CIRCUIT_CONFIDENCE or not self.available:
            return ruled

        try:
            raw = await asyncio.wait_for(
                self._inference.classify(text, context),  # type: ignore[union-attr]
                timeout=self._settings.external_timeout_seconds,
            )
            return _parse_inference(raw)
        except Exception:
            self.fallback_count += 1
            logger.warning("Intent inference failed, using pattern result", exc_info=True)
            return ruled
