"""Tests for correlation ids, phone masking and the stdlib bridge."""

from __future__ import annotations

import json
import logging

import pytest

from ridekeeper.logging import (
    configure_logging,
    correlation_id_var,
    mask_phone,
    new_correlation_id,
)


@pytest.mark.parametrize(
    ("phone", "expected"),
    [("+14155550100", "+1415***"), (None, "<none>"), ("", "<none>")],
)
def test_mask_phone(phone: str | None, expected: str) -> None:
    assert mask_phone(phone) == expected


def test_new_correlation_id_sets_context() -> None:
    cid = new_correlation_id()
    assert correlation_id_var.get() == cid
    assert new_correlation_id() != cid


def test_stdlib_records_render_as_json_with_correlation_id(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(json_output=True, level="INFO")
    try:
        correlation_id_var.set("cid-42")
        logging.getLogger("ridekeeper.test").info("Ride %s booked", "R-1")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "Ride R-1 booked"
        assert record["correlation_id"] == "cid-42"
        assert record["level"] == "info"
        assert record["logger"] == "ridekeeper.test"
    finally:
        root = logging.getLogger()
        for handler in [h for h in root.handlers if h.get_name() == "ridekeeper"]:
            root.removeHandler(handler)
        correlation_id_var.set("")
