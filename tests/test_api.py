"""Test health endpoint, docs and event ingestion."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["engine_running"] is False


@pytest.mark.asyncio
async def test_api_docs(client: AsyncClient):
    resp = await client.get("/docs")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_ingest_event_accepted(client: AsyncClient, sql_engine):
    resp = await client.post("/api/v1/events", json={
        "id": "evt_fixed",
        "event": "product.created",
        "tenant_id": "acme",
        "data": {"product": {"id": "p1", "title": "Saffron", "nickname": None}},
    })
    assert resp.status_code == 202
    assert resp.json() == {"event_id": "evt_fixed", "event": "product.created", "accepted": True}

    event = sql_engine._events.get_nowait()
    assert event.tenant_id == "acme"
    assert event.data["product"]["nickname"] is None


@pytest.mark.asyncio
async def test_ingest_event_rejected(client: AsyncClient, sql_engine):
    resp = await client.post("/api/v1/events", json={"event": "order.created", "data": {"order": {}}})
    assert resp.status_code == 422
    resp = await client.post("/api/v1/events", json={"event": "order.exploded", "data": {}})
    assert resp.status_code == 422
    assert sql_engine._events.empty()
