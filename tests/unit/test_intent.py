"""Tests for the two-tier intent resolver."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from ridekeeper.conversation.intent import (
    ConversationContext,
    Intent,
    IntentResolver,
    classify_by_rules,
    normalize,
)
from ridekeeper.settings import Settings


@pytest.fixture()
def ai_settings() -> Settings:
    return Settings(inference_enabled=True, external_timeout_seconds=0.5)


def test_normalize_strips_punctuation_and_case() -> None:
    assert normalize("  YES!!  Please.  ") == "yes please"


def test_normalize_keeps_punctuation_inside_words() -> None:
    assert normalize("Is it $4.50, e.g. for 1.5 miles?") == "is it $4.50 e.g for 1.5 miles"
    assert normalize("Nope, I got a ride.") == "nope i got a ride"


class TestRules:
    @pytest.mark.parametrize("text", ["yes", "YES!", "Yep", "ok", "sounds good", "\N{THUMBS UP SIGN}"])
    def test_confirmations(self, text: str) -> None:
        result = classify_by_rules(text)
        assert result.intent is Intent.CONFIRM
        assert result.confidence >= 0.9

    @pytest.mark.parametrize(
        "text",
        [
            "no",
            "No thanks",
            "I have a ride",
            "no my friend is taking me",
            "I'm good",
            "Nope, I got a ride.",
        ],
    )
    def test_declines(self, text: str) -> None:
        result = classify_by_rules(text)
        assert result.intent is Intent.DECLINE
        assert result.confidence >= 0.9

    def test_time_with_instead_is_reschedule(self) -> None:
        result = classify_by_rules("can we do it at 2pm instead")
        assert result.intent is Intent.RESCHEDULE
        assert result.confidence == 0.8
        assert result.preferred_time == "2pm"

    def test_cant_make_it_is_reschedule(self) -> None:
        assert classify_by_rules("I can't make it tomorrow").intent is Intent.RESCHEDULE

    def test_question_mark_is_question(self) -> None:
        result = classify_by_rules("How much does it cost?")
        assert result.intent is Intent.QUESTION
        assert result.confidence == 0.7

    def test_pickup_location_confirms_with_location(self) -> None:
        result = classify_by_rules("Yes, pick me up at the library on 5th St.")
        assert result.intent is Intent.CONFIRM
        assert result.confidence == 0.85
        assert result.pickup_location == "the library on 5th St"

    def test_bare_time_confirms_with_time(self) -> None:
        result = classify_by_rules("be ready around 9:30 am")
        assert result.intent is Intent.CONFIRM
        assert result.preferred_time == "9:30 am"

    def test_gibberish_is_unknown(self) -> None:
        result = classify_by_rules("banana")
        assert result.intent is Intent.UNKNOWN
        assert result.confidence == 0.3

    def test_empty_is_unknown(self) -> None:
        assert classify_by_rules("  ?! ").intent is Intent.UNKNOWN


class TestResolver:
    @pytest.mark.anyio()
    async def test_clear_yes_never_calls_inference(self, ai_settings: Settings) -> None:
        inference = AsyncMock()
        resolver = IntentResolver(ai_settings, inference=inference)

        result = await resolver.resolve("yes")

        assert result.intent is Intent.CONFIRM
        assert result.confidence >= 0.9
        assert result.source == "rules"
        inference.classify.assert_not_awaited()

    @pytest.mark.anyio()
    async def test_ambiguous_text_uses_inference(self, ai_settings: Settings) -> None:
        inference = AsyncMock()
        inference.classify.return_value = {
            "intent": "CONFIRM_RIDE",
            "confidence": 88,
            "alternativePickupLocation": "the shelter on Howard",
        }
        resolver = IntentResolver(ai_settings, inference=inference)
        context = ConversationContext(patient_name="Maria", site_name="Mission Street Clinic")

        result = await resolver.resolve("I guess that works if you come to the shelter", context)

        assert result.intent is Intent.CONFIRM
        assert result.confidence == pytest.approx(0.88)
        assert result.pickup_location == "the shelter on Howard"
        assert result.source == "inference"
        inference.classify.assert_awaited_once_with(
            "I guess that works if you come to the shelter", context
        )

    @pytest.mark.anyio()
    async def test_unknown_label_falls_back_to_rules(self, ai_settings: Settings) -> None:
        inference = AsyncMock()
        inference.classify.return_value = {"intent": "MAYBE", "confidence": 0.9}
        resolver = IntentResolver(ai_settings, inference=inference)

        result = await resolver.resolve("hmm what time?")

        assert result.intent is Intent.QUESTION
        assert result.source == "rules"
        assert resolver.fallback_count == 1

    @pytest.mark.anyio()
    async def test_provider_error_falls_back(self, ai_settings: Settings) -> None:
        inference = AsyncMock()
        inference.classify.side_effect = RuntimeError("boom")
        resolver = IntentResolver(ai_settings, inference=inference)

        result = await resolver.resolve("banana")

        assert result.intent is Intent.UNKNOWN
        assert resolver.fallback_count == 1

    @pytest.mark.anyio()
    async def test_disabled_flag_skips_inference(self, settings: Settings) -> None:
        inference = AsyncMock()
        resolver = IntentResolver(settings, inference=inference)

        result = await resolver.resolve("banana")

        assert result.intent is Intent.UNKNOWN
        inference.classify.assert_not_awaited()
