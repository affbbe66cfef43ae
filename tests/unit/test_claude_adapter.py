"""Tests for the Anthropic inference adapter (mocked client)."""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from anthropic import APIConnectionError

from ridekeeper.adapters.claude import ClaudeInference, parse_json_object
from ridekeeper.conversation.intent import ConversationContext
from ridekeeper.errors import InferenceError
from ridekeeper.models import Appointment, HousingStatus, Patient
from ridekeeper.scoring.adjustment import AssessmentContext, PatientHistory
from ridekeeper.scoring.risk_scorer import RiskScorer


def _client(text: str | None = None, *, block_type: str = "text") -> MagicMock:
    client = MagicMock()
    content = [SimpleNamespace(type=block_type, text=text)] if text is not None else []
    client.messages.create = AsyncMock(return_value=SimpleNamespace(content=content))
    return client


class TestParseJsonObject:
    def test_plain(self) -> None:
        assert parse_json_object('{"intent": "CONFIRM"}') == {"intent": "CONFIRM"}

    def test_fenced(self) -> None:
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_prose_rejected(self) -> None:
        with pytest.raises(InferenceError, match="non-JSON"):
            parse_json_object("Sure! The patient is high risk.")

    def test_array_rejected(self) -> None:
        with pytest.raises(InferenceError, match="not an object"):
            parse_json_object("[1, 2]")


class TestClaudeInference:
    def test_requires_key_or_client(self) -> None:
        with pytest.raises(ValueError, match="API key"):
            ClaudeInference(api_key="")

    @pytest.mark.anyio()
    async def test_classify_uses_intent_model_and_context(self) -> None:
        client = _client('{"intent": "CONFIRM", "confidence": 0.8}')
        inference = ClaudeInference(api_key="", intent_model="intent-model", client=client)

        raw = await inference.classify(
            "sure thing",
            ConversationContext(patient_name="Maria", appointment_time="Tuesday", site_name="Clinic"),
        )

        assert raw == {"intent": "CONFIRM", "confidence": 0.8}
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "intent-model"
        assert kwargs["max_tokens"] == 200
        assert "system" in kwargs
        prompt = kwargs["messages"][0]["content"]
        assert "patient Maria" in prompt
        assert '"sure thing"' in prompt

    @pytest.mark.anyio()
    async def test_assess_prompt_carries_base_score(self) -> None:
        client = _client('{"adjusted_score": 75, "confidence": 90}')
        inference = ClaudeInference(api_key="", risk_model="risk-model", client=client)
        patient = Patient(
            id="PAT-1",
            first_name="Maria",
            last_name="Lopez",
            phone="+14155550100",
            housing_status=HousingStatus.HOMELESS,
            distance_miles=8.0,
        )
        appointment = Appointment(
            id="APT-1",
            patient_id="PAT-1",
            site_id="SITE-1",
            scheduled_at=datetime(2026, 3, 17, 17, 10, tzinfo=UTC),
        )
        base = RiskScorer().score(patient)
        context = AssessmentContext(
            patient=patient, appointment=appointment, base=base, history=PatientHistory()
        )

        raw = await inference.assess(context)

        assert raw["adjusted_score"] == 75
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "risk-model"
        assert "system" not in kwargs
        prompt = kwargs["messages"][0]["content"]
        assert "Housing status: HOMELESS" in prompt
        assert f"Rule-based score: {base.score}/100 (HIGH)" in prompt
        assert "No messages yet" in prompt

    @pytest.mark.anyio()
    async def test_api_error_becomes_inference_error(self) -> None:
        client = MagicMock()
        client.messages.create = AsyncMock(
            side_effect=APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com"))
        )
        inference = ClaudeInference(api_key="", client=client)
        with pytest.raises(InferenceError, match="Anthropic API call failed"):
            await inference.classify("maybe")

    @pytest.mark.anyio()
    async def test_non_text_block_rejected(self) -> None:
        inference = ClaudeInference(api_key="", client=_client("{}", block_type="tool_use"))
        with pytest.raises(InferenceError, match="no text block"):
            await inference.classify("maybe")

    @pytest.mark.anyio()
    async def test_empty_content_rejected(self) -> None:
        inference = ClaudeInference(api_key="", client=_client(None))
        with pytest.raises(InferenceError):
            await inference.classify("maybe")
