"""Engine tests — dispatch, retries, cancellation, rate limiting and the running loops.

These use the in-memory registry and log store; tests/test_log_store.py covers
the SQL implementations.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.config import Settings
from app.exceptions import DeliveryNotFoundError, EventValidationError, InvalidDeliveryStateError
from app.models import WebhookDelivery, utcnow
from app.schemas import RateLimitConfig, RetryConfig, WebhookFilters
from app.schemas.events import create_event, delivery_id_for
from app.services.retry import DeliveryStatus
from app.services.sample_payloads import sample_data
from app.services.signing import verify
from app.services.webhook_engine import WebhookEngine
from tests.fakes import InMemoryDeliveryLogStore, InMemorySubscriptionRegistry, Receiver, make_config


def order_event(**kw):
    return create_event("order.created", sample_data("order.created"), **kw)


def make_engine(*configs, receiver=None, settings=None):
    registry = InMemorySubscriptionRegistry(*configs)
    store = InMemoryDeliveryLogStore()
    receiver = receiver or Receiver()
    engine = WebhookEngine(registry, store, client=receiver.client(), settings=settings)
    return engine, registry, store, receiver


# ── Dispatch ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_no_subscriptions_no_deliveries():
    engine, _, store, _ = make_engine()
    assert await engine.dispatch(order_event()) == []
    assert store.deliveries == {}


@pytest.mark.asyncio
async def test_one_delivery_per_matching_subscription():
    engine, _, store, _ = make_engine(
        make_config("wh_1"),
        make_config("wh_2", events=["order.created", "order.updated"]),
        make_config("wh_3", events=["payment.failed"]),
        make_config("wh_4", is_active=False),
    )
    event = order_event()
    ids = await engine.dispatch(event)
    assert sorted(ids) == sorted([delivery_id_for(event.id, "wh_1"), delivery_id_for(event.id, "wh_2")])
    assert {d.webhook_id for d in store.deliveries.values()} == {"wh_1", "wh_2"}
    assert all(d.status == "pending" and d.max_attempts == 3 for d in store.deliveries.values())


@pytest.mark.asyncio
async def test_redispatch_does_not_duplicate():
    engine, _, store, _ = make_engine(make_config("wh_1"))
    event = order_event()
    first = await engine.dispatch(event)
    assert await engine.dispatch(event) == []
    assert list(store.deliveries) == first


@pytest.mark.asyncio
async def test_filters_and_tenant_scope():
    engine, _, store, _ = make_engine(
        make_config("rich", tenant_id="a", filters=WebhookFilters(min_order_value=10_000)),
        make_config("tenant_b", tenant_id="b"),
        make_config("plain", tenant_id="a"),
    )
    ids = await engine.dispatch(order_event(tenant_id="a"))
    assert [store.deliveries[i].webhook_id for i in ids] == ["plain"]


@pytest.mark.asyncio
async def test_payload_envelope_stored_once():
    engine, _, store, _ = make_engine(make_config("wh_1"))
    event = order_event()
    [delivery_id] = await engine.dispatch(event)
    body = json.loads(store.deliveries[delivery_id].payload)
    assert body["event"] == "order.created"
    assert body["webhook_id"] == "wh_1"
    assert body["delivery_id"] == delivery_id
    assert body["data"] == event.data
    assert body["timestamp"].endswith("Z")


# ── Attempts & retries ───────────────────────────────────
@pytest.mark.asyncio
async def test_failing_endpoint_scenario():
    """500 on every attempt with max_retries=2, retry_delay=1000, multiplier=2."""
    config = make_config("wh_1", retry_config=RetryConfig(max_retries=2, retry_delay=1000, backoff_multiplier=2))
    engine, _, store, receiver = make_engine(config, receiver=Receiver(default=500))
    [delivery_id] = await engine.dispatch(order_event())

    statuses = [await engine.run_attempt(delivery_id) for _ in range(3)]
    assert statuses == [DeliveryStatus.RETRY, DeliveryStatus.RETRY, DeliveryStatus.ABANDONED]
    assert await engine.run_attempt(delivery_id) is None

    attempts = store.attempts_for(delivery_id)
    assert [a.attempt for a in attempts] == [1, 2, 3]
    assert [a.retry_delay_ms for a in attempts] == [1000, 2000, None]
    assert all(a.error_type == "server_error" for a in attempts)
    assert store.deliveries[delivery_id].status == "abandoned"
    assert store.consecutive_failures["wh_1"] == 3

    assert len(receiver.requests) == 3
    assert len({r.content for r in receiver.requests}) == 1
    assert {r.headers["X-VASA-Delivery"] for r in receiver.requests} == {delivery_id}


@pytest.mark.asyncio
async def test_unsendable_request_is_a_recorded_failure():
    config = make_config("wh_1", headers={"X-Tenant": "Zürich"})
    engine, _, store, receiver = make_engine(config)
    [delivery_id] = await engine.dispatch(order_event())

    statuses = [await engine.run_attempt(delivery_id) for _ in range(3)]
    assert statuses == [DeliveryStatus.RETRY, DeliveryStatus.RETRY, DeliveryStatus.ABANDONED]
    attempts = store.attempts_for(delivery_id)
    assert [a.error_type for a in attempts] == ["client_error"] * 3
    assert store.consecutive_failures["wh_1"] == 3
    assert receiver.requests == []
    assert delivery_id not in engine.retry_queue


@pytest.mark.asyncio
async def test_final_outcome_unschedules_delivery():
    engine, _, _, _ = make_engine(make_config("wh_1"))
    [delivery_id] = await engine.dispatch(order_event())
    assert delivery_id in engine.retry_queue
    assert await engine.run_attempt(delivery_id) == DeliveryStatus.SUCCESS
    assert delivery_id not in engine.retry_queue


@pytest.mark.asyncio
async def test_health_recovers_on_success():
    engine, _, store, _ = make_engine(make_config("wh_1"), receiver=Receiver(500, 503, 200))
    [delivery_id] = await engine.dispatch(order_event())
    statuses = [await engine.run_attempt(delivery_id) for _ in range(3)]
    assert statuses[-1] == DeliveryStatus.SUCCESS
    assert store.consecutive_failures["wh_1"] == 0
    delivery = store.deliveries[delivery_id]
    assert delivery.completed_at is not None
    assert delivery.last_error == ""


@pytest.mark.asyncio
async def test_rate_limited_response_uses_retry_after():
    receiver = Receiver(httpx.Response(429, headers={"Retry-After": "3"}), 200)
    engine, _, store, _ = make_engine(make_config("wh_1"), receiver=receiver)
    [delivery_id] = await engine.dispatch(order_event())
    assert await engine.run_attempt(delivery_id) == DeliveryStatus.RETRY
    [attempt] = store.attempts_for(delivery_id)
    assert attempt.error_type == "rate_limit_error"
    assert attempt.retry_delay_ms == 3000


@pytest.mark.asyncio
async def test_unsigned_subscription_has_no_signature():
    engine, _, _, receiver = make_engine(make_config("wh_1", secret=None))
    [delivery_id] = await engine.dispatch(order_event())
    await engine.run_attempt(delivery_id)
    request = receiver.requests[0]
    assert "X-VASA-Signature" not in request.headers
    assert request.headers["X-VASA-Event"] == "order.created"


@pytest.mark.asyncio
async def test_signed_subscription_signature_verifies():
    engine, _, _, receiver = make_engine(make_config("wh_1", secret="topsecret"))
    [delivery_id] = await engine.dispatch(order_event())
    await engine.run_attempt(delivery_id)
    request = receiver.requests[0]
    assert verify(request.content, request.headers["X-VASA-Signature"], "topsecret")


# ── Deactivation ─────────────────────────────────────────
@pytest.mark.asyncio
async def test_queued_retry_cancelled_after_deactivation():
    engine, registry, store, receiver = make_engine(make_config("wh_1"), receiver=Receiver(default=500))
    [delivery_id] = await engine.dispatch(order_event())
    assert await engine.run_attempt(delivery_id) == DeliveryStatus.RETRY

    await registry.deactivate("wh_1", "manual")
    assert await engine.run_attempt(delivery_id) == DeliveryStatus.CANCELLED
    delivery = store.deliveries[delivery_id]
    assert delivery.status == "cancelled"
    assert delivery.last_error == "Webhook deactivated"
    assert len(receiver.requests) == 1
    assert delivery_id not in engine.retry_queue
    assert await engine.dispatch(order_event()) == []


@pytest.mark.asyncio
async def test_queued_retry_cancelled_after_delete():
    engine, registry, store, _ = make_engine(make_config("wh_1"), receiver=Receiver(default=500))
    [delivery_id] = await engine.dispatch(order_event())
    await engine.run_attempt(delivery_id)
    del registry.configs["wh_1"]
    assert await engine.run_attempt(delivery_id) == DeliveryStatus.CANCELLED
    assert store.deliveries[delivery_id].last_error == "Webhook deleted"


@pytest.mark.asyncio
async def test_auto_disable_policy():
    settings = Settings(webhook_auto_disable=True, webhook_auto_disable_after=2)
    config = make_config("wh_1", retry_config=RetryConfig(max_retries=5, retry_delay=10))
    engine, registry, store, _ = make_engine(config, receiver=Receiver(default=500), settings=settings)
    [delivery_id] = await engine.dispatch(order_event())
    await engine.run_attempt(delivery_id)
    assert registry.configs["wh_1"].is_active
    await engine.run_attempt(delivery_id)
    assert not registry.configs["wh_1"].is_active
    assert await engine.run_attempt(delivery_id) == DeliveryStatus.CANCELLED


# ── Rate limiting ────────────────────────────────────────
@pytest.mark.asyncio
async def test_caller_side_rate_limit_defers_without_counting():
    config = make_config("wh_1", rate_limit=RateLimitConfig(enabled=True, max_requests_per_minute=1))
    engine, _, store, receiver = make_engine(config)
    [first] = await engine.dispatch(order_event())
    [second] = await engine.dispatch(order_event())

    assert await engine.run_attempt(first) == DeliveryStatus.SUCCESS
    assert await engine.run_attempt(second) == DeliveryStatus.PENDING

    deferred = store.deliveries[second]
    assert deferred.attempts == 0
    assert deferred.status == "pending"
    assert deferred.next_retry_at > utcnow() + timedelta(seconds=30)
    assert store.attempts_for(second) == []
    assert len(receiver.requests) == 1
    assert second in engine.retry_queue


# ── Replay & resume ──────────────────────────────────────
@pytest.mark.asyncio
async def test_replay_abandoned_delivery():
    engine, _, store, receiver = make_engine(make_config("wh_1"), receiver=Receiver(500, 500, 500))
    [delivery_id] = await engine.dispatch(order_event())
    for _ in range(3):
        await engine.run_attempt(delivery_id)
    assert store.deliveries[delivery_id].status == "abandoned"

    reopened = await engine.replay(delivery_id)
    assert reopened.status == "pending"
    assert reopened.attempt_offset == 3
    assert reopened.max_attempts == 6
    assert delivery_id in engine.retry_queue

    assert await engine.run_attempt(delivery_id) == DeliveryStatus.SUCCESS
    assert [a.attempt for a in store.attempts_for(delivery_id)] == [1, 2, 3, 4]
    assert len({r.content for r in receiver.requests}) == 1


@pytest.mark.asyncio
async def test_replay_rejects_open_or_missing_delivery():
    engine, _, _, _ = make_engine(make_config("wh_1"))
    [delivery_id] = await engine.dispatch(order_event())
    with pytest.raises(InvalidDeliveryStateError):
        await engine.replay(delivery_id)
    with pytest.raises(DeliveryNotFoundError):
        await engine.replay("missing")


@pytest.mark.asyncio
async def test_resume_requeues_unfinished():
    engine, _, store, _ = make_engine(make_config("wh_1"))
    for delivery_id, status, due in (
        ("d_pending", "pending", None),
        ("d_retry", "retry", utcnow() + timedelta(seconds=60)),
        ("d_done", "success", None),
    ):
        await store.create_delivery(WebhookDelivery(
            id=delivery_id, webhook_id="wh_1", event_id="evt", event_type="order.created",
            status=status, payload="{}", next_retry_at=due,
        ))
    assert await engine.resume() == 2
    assert "d_done" not in engine.retry_queue
    assert len(engine.retry_queue) == 2
    assert await asyncio.wait_for(engine.retry_queue.get(), timeout=1) == "d_pending"
    # d_retry stays queued until its persisted due time
    assert "d_retry" in engine.retry_queue
    assert len(engine.retry_queue) == 1


# ── Intake ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_emit_rejects_contract_violation():
    engine, _, _, _ = make_engine(make_config("wh_1"))
    with pytest.raises(EventValidationError):
        engine.emit({"event": "order.created", "data": {"order": {}}})
    with pytest.raises(EventValidationError):
        engine.emit({"event": "not.a.type", "data": {}})
    assert engine._events.qsize() == 0


@pytest.mark.asyncio
async def test_emit_rejects_data_that_cannot_go_on_the_wire():
    engine, _, _, _ = make_engine(make_config("wh_1"))
    placed = {"product": {"id": "p1", "listedAt": datetime.now(timezone.utc)}}
    with pytest.raises(EventValidationError, match="JSON serializable"):
        engine.emit({"event": "product.created", "data": placed})
    with pytest.raises(EventValidationError):
        engine.emit({"event": "product.created", "data": {"product": {"id": "p1", "price": float("nan")}}})
    assert engine._events.qsize() == 0


@pytest.mark.asyncio
async def test_emit_accepts_raw_dict():
    engine, _, _, _ = make_engine()
    event = engine.emit({"event": "product.created", "data": {"product": {"id": "p1"}}})
    assert event.event.value == "product.created"
    assert engine._events.qsize() == 1


# ── Management operations ────────────────────────────────
@pytest.mark.asyncio
async def test_send_test_delivery():
    engine, _, store, receiver = make_engine(make_config("wh_1"))
    result = await engine.send_test(make_config("wh_1"))
    assert result.success
    assert result.status == "success"
    assert result.response_status == 200
    body = receiver.bodies()[0]
    assert body["event"] == "system.alert"
    assert body["data"]["test"] is True
    assert store.deliveries[result.delivery_id].max_attempts == 1


@pytest.mark.asyncio
async def test_send_test_failure_is_not_retried():
    engine, _, store, _ = make_engine(make_config("wh_1"), receiver=Receiver(default=500))
    result = await engine.send_test(make_config("wh_1"))
    assert not result.success
    assert result.status == "abandoned"
    assert result.delivery_id not in engine.retry_queue


@pytest.mark.asyncio
async def test_verify_endpoint_challenge_echo():
    def echo(request):
        return httpx.Response(200, json={"challenge": json.loads(request.content)["data"]["challenge"]})

    engine, registry, store, receiver = make_engine(make_config("wh_1"), receiver=Receiver(echo))
    result = await engine.verify_endpoint(make_config("wh_1"))
    assert result.success
    assert result.challenge_verified
    assert "wh_1" in registry.verified
    assert receiver.requests[0].headers["X-VASA-Event"] == "webhook.verification"
    assert store.attempts == []


@pytest.mark.asyncio
async def test_verify_endpoint_without_echo_or_failing():
    engine, registry, _, _ = make_engine(make_config("wh_1"), receiver=Receiver(200, 404))
    first = await engine.verify_endpoint(make_config("wh_1"))
    assert first.success and not first.challenge_verified
    second = await engine.verify_endpoint(make_config("wh_2"))
    assert not second.success
    assert second.status_code == 404
    assert registry.verified == {"wh_1"}


# ── Running engine ───────────────────────────────────────
@pytest.mark.asyncio
async def test_running_engine_delivers_with_retries():
    receiver = Receiver(500, 500, 200)
    engine, _, store, _ = make_engine(make_config("wh_1"), receiver=receiver)
    await engine.start()
    try:
        event = engine.emit(order_event())
        await asyncio.wait_for(engine.drain(), timeout=5)
    finally:
        await engine.stop()
    delivery = store.deliveries[delivery_id_for(event.id, "wh_1")]
    assert delivery.status == "success"
    assert delivery.attempts == 3
    assert len(receiver.requests) == 3


@pytest.mark.asyncio
async def test_registry_outage_buffers_event():
    settings = Settings(webhook_registry_retry_seconds=0.02)
    engine, registry, store, receiver = make_engine(make_config("wh_1"), settings=settings)
    registry.failures_left = 2
    await engine.start()
    try:
        engine.emit(order_event())
        await asyncio.wait_for(engine.drain(), timeout=5)
    finally:
        await engine.stop()
    assert len(store.deliveries) == 1
    assert len(receiver.requests) == 1
    assert registry.calls >= 4


@pytest.mark.asyncio
async def test_log_store_failure_mid_dispatch_buffers_event():
    settings = Settings(webhook_registry_retry_seconds=0.02)
    engine, _, store, receiver = make_engine(make_config("wh_1"), make_config("wh_2"), settings=settings)
    create = store.create_delivery
    failures = []

    async def flaky_create(delivery):
        if delivery.webhook_id == "wh_2" and not failures:
            failures.append(delivery.id)
            raise RuntimeError("disk full")
        return await create(delivery)

    store.create_delivery = flaky_create
    await engine.start()
    try:
        event = engine.emit(order_event())
        await asyncio.wait_for(engine.drain(), timeout=5)
    finally:
        await engine.stop()
    assert failures == [delivery_id_for(event.id, "wh_2")]
    assert sorted(d.webhook_id for d in store.deliveries.values()) == ["wh_1", "wh_2"]
    assert all(d.status == "success" for d in store.deliveries.values())
    assert len(receiver.requests) == 2


@pytest.mark.asyncio
async def test_attempts_of_one_delivery_are_sequential():
    receiver = Receiver(default=500, delay=0.03)
    config = make_config("wh_1", retry_config=RetryConfig(max_retries=2, retry_delay=1))
    engine, _, store, _ = make_engine(config, receiver=receiver)
    await engine.start()
    try:
        [delivery_id] = await engine.dispatch(order_event())
        await asyncio.sleep(0.005)
        for _ in range(5):
            engine.retry_queue.put(delivery_id)
        await asyncio.wait_for(engine.drain(), timeout=5)
    finally:
        await engine.stop()
    assert receiver.max_active == 1
    assert [a.attempt for a in store.attempts_for(delivery_id)] == [1, 2, 3]


@pytest.mark.asyncio
async def test_per_subscription_concurrency_cap():
    settings = Settings(webhook_max_concurrent_per_subscription=2)
    receiver = Receiver(delay=0.03)
    engine, _, store, _ = make_engine(make_config("wh_1"), receiver=receiver, settings=settings)
    await engine.start()
    try:
        for _ in range(6):
            engine.emit(order_event())
        await asyncio.wait_for(engine.drain(), timeout=5)
    finally:
        await engine.stop()
    assert len(receiver.requests) == 6
    assert receiver.max_active == 2
    assert all(d.status == "success" for d in store.deliveries.values())


@pytest.mark.asyncio
async def test_global_concurrency_cap():
    settings = Settings(webhook_max_concurrent_deliveries=1)
    receiver = Receiver(delay=0.02)
    engine, _, _, _ = make_engine(make_config("a"), make_config("b"), make_config("c"),
                                  receiver=receiver, settings=settings)
    await engine.start()
    try:
        engine.emit(order_event())
        engine.emit(order_event())
        await asyncio.wait_for(engine.drain(), timeout=5)
    finally:
        await engine.stop()
    assert len(receiver.requests) == 6
    assert receiver.max_active == 1


@pytest.mark.asyncio
async def test_cleanup_purges_old_terminal_deliveries():
    engine, _, store, _ = make_engine()
    old = utcnow() - timedelta(days=45)
    for delivery_id, status in (("old_done", "success"), ("old_open", "retry"), ("new_done", "abandoned")):
        await store.create_delivery(WebhookDelivery(
            id=delivery_id, webhook_id="wh_1", event_id="evt", event_type="order.created",
            status=status, payload="{}", created_at=old if delivery_id.startswith("old") else utcnow(),
        ))
    assert await engine.cleanup_logs() == 1
    assert sorted(store.deliveries) == ["new_done", "old_open"]
