"""Tests for global API error handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from ridekeeper.api.app import create_app
from ridekeeper.errors import RideKeeperError

if TYPE_CHECKING:
    from fastapi import FastAPI

    from tests.conftest import SeedFn


@pytest.mark.anyio()
async def test_validation_error_returns_machine_readable_payload(client: AsyncClient) -> None:
    resp = await client.post("/ingest", json={"appointment_id": "X"})

    assert resp.status_code == 422
    body = resp.json()
    assert body["error_code"] == "INVALID_REQUEST"
    assert body["message"] == "Request validation failed"
    assert body["request_id"]
    assert isinstance(body.get("details"), list)
    assert resp.headers["x-correlation-id"] == body["request_id"]


@pytest.mark.anyio()
async def test_unknown_route_is_not_found() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/does-not-exist")

    assert resp.status_code == 404
    body = resp.json()
    assert body["error_code"] == "NOT_FOUND"
    assert body["request_id"]


@pytest.mark.anyio()
async def test_wrong_method(client: AsyncClient) -> None:
    resp = await client.delete("/health")
    assert resp.status_code == 405
    assert resp.json()["error_code"] == "METHOD_NOT_ALLOWED"


@pytest.mark.anyio()
async def test_domain_not_found(client: AsyncClient) -> None:
    resp = await client.get("/appointments/APT-NOPE")
    assert resp.status_code == 404
    body = resp.json()
    assert body["error_code"] == "NOT_FOUND"
    assert "APT-NOPE" in body["message"]


@pytest.mark.anyio()
async def test_domain_conflict_codes(client: AsyncClient, seed: SeedFn) -> None:
    await seed()
    first = await client.post("/appointments/APT-1/offer-ride")
    second = await client.post("/appointments/APT-1/offer-ride")

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error_code"] == "OFFER_ALREADY_SENT"


@pytest.mark.anyio()
async def test_no_contact_is_unprocessable(client: AsyncClient, seed: SeedFn) -> None:
    await seed(phone=None)
    resp = await client.post("/appointments/APT-1/offer-ride")
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "NO_CONTACT"


@pytest.mark.anyio()
async def test_base_domain_error_is_internal(app: FastAPI) -> None:
    @app.get("/__domain_boom")
    async def domain_boom() -> dict[str, str]:
        raise RideKeeperError("invariant broken")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/__domain_boom")

    assert resp.status_code == 500
    assert resp.json()["error_code"] == "INTERNAL_ERROR"


@pytest.mark.anyio()
async def test_unhandled_exception_returns_internal_error_payload(app: FastAPI) -> None:
    @app.get("/__boom")
    async def boom() -> dict[str, str]:
        raise RuntimeError("boom")

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/__boom")

    assert resp.status_code == 500
    body = resp.json()
    assert body["error_code"] == "INTERNAL_ERROR"
    assert body["message"] == "Internal server error"
    assert body["request_id"]
