"""Tests for the test receiver app."""

import json

import pytest
from httpx import ASGITransport, AsyncClient

from app.receiver import create_receiver_app
from app.services.signing import sign

BODY = json.dumps({"event": "order.created", "data": {"order": {"id": "o1"}}}).encode()


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://receiver")


@pytest.mark.asyncio
async def test_records_and_clears():
    app = create_receiver_app(max_delay_ms=0)
    async with _client(app) as ac:
        resp = await ac.post("/webhook", content=BODY, headers={"X-VASA-Delivery": "d_1"})
        assert resp.status_code == 200
        assert resp.json()["received"] is True

        health = (await ac.get("/health")).json()
        assert health["webhooksReceived"] == 1

        received = (await ac.get("/webhooks")).json()
        assert received[0]["body"]["event"] == "order.created"
        assert received[0]["headers"]["x-vasa-delivery"] == "d_1"
        assert received[0]["signature_valid"] is None

        await ac.delete("/webhooks")
        assert (await ac.get("/webhooks")).json() == []


@pytest.mark.asyncio
async def test_signature_enforced():
    app = create_receiver_app(secret="s3cret", max_delay_ms=0)
    async with _client(app) as ac:
        bad = await ac.post("/webhook", content=BODY, headers={"X-VASA-Signature": "sha256=00"})
        assert bad.status_code == 401
        good = await ac.post("/webhook", content=BODY, headers={"X-VASA-Signature": sign(BODY, "s3cret")})
        assert good.status_code == 200
    assert app.state.received[0]["signature_valid"] is True


@pytest.mark.asyncio
async def test_rejects_non_object_body():
    app = create_receiver_app(max_delay_ms=0)
    async with _client(app) as ac:
        assert (await ac.post("/webhook", content=b"not json")).status_code == 400
        assert (await ac.post("/webhook", content=b"[1, 2]")).status_code == 400


@pytest.mark.asyncio
async def test_echoes_verification_challenge():
    app = create_receiver_app(max_delay_ms=0)
    body = json.dumps({"event": "webhook.verification", "data": {"challenge": "abc123"}}).encode()
    async with _client(app) as ac:
        resp = await ac.post("/webhook", content=body)
    assert resp.json()["challenge"] == "abc123"
