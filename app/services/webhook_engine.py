"""Webhook engine — event intake, dispatch, scheduled delivery attempts and housekeeping.

Producers call ``emit()`` and move on. A dispatch loop turns each event into
pending deliveries; a scheduler loop pulls due deliveries off a DelayedQueue and
runs one attempt per delivery at a time. Delivery rows carry ``next_retry_at``,
so ``start()`` can pick up where a previous process stopped.
"""

import asyncio
import json
import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Optional

import httpx

from app.config import Settings, get_settings
from app.exceptions import (
    EventValidationError,
    InvalidDeliveryStateError,
    LogStoreUnavailableError,
    RegistryUnavailableError,
)
from app.models import WebhookDelivery, as_utc, utcnow
from app.schemas import VerificationOut, WebhookConfig, WebhookTestResult
from app.schemas.events import (
    VERIFICATION_EVENT,
    WebhookEvent,
    WebhookEventType,
    build_payload,
    create_event,
    delivery_id_for,
    format_timestamp,
    parse_event,
)
from app.services.delivery_worker import DeliveryWorker
from app.services.health import HealthTracker
from app.services.log_store import DeliveryLogStore, SqlDeliveryLogStore
from app.services.rate_limiter import RateLimiter
from app.services.registry import SqlSubscriptionRegistry, SubscriptionRegistry
from app.services.retry import UNFINISHED_STATUSES, DelayedQueue, DeliveryStatus, decide
from app.services.signing import serialize_payload
from app.services.webhook_dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class WebhookEngine:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        log_store: DeliveryLogStore,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.log_store = log_store
        self.dispatcher = Dispatcher(registry, log_store)
        self.health = HealthTracker(registry, self.settings)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry_queue = DelayedQueue()

        self._client = client
        self._owns_client = client is None
        self._worker: Optional[DeliveryWorker] = None

        self._events: asyncio.Queue[WebhookEvent] = asyncio.Queue()
        self._global_slots = asyncio.Semaphore(self.settings.webhook_max_concurrent_deliveries)
        self._subscription_slots: dict[str, asyncio.Semaphore] = {}
        self._inflight: set[str] = set()
        self._buffered = 0
        self._pending_events = 0
        self._tasks: set[asyncio.Task] = set()
        self._loops: list[asyncio.Task] = []
        self.running = False

    @classmethod
    def from_session_factory(cls, session_factory, **kwargs) -> "WebhookEngine":
        return cls(SqlSubscriptionRegistry(session_factory), SqlDeliveryLogStore(session_factory), **kwargs)

    @property
    def worker(self) -> DeliveryWorker:
        if self._worker is None:
            if self._client is None:
                self._client = httpx.AsyncClient(follow_redirects=False)
            self._worker = DeliveryWorker(self._client, self.settings)
        return self._worker

    # ── Lifecycle ────────────────────────────────────────
    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        resumed = await self.resume()
        self._loops = [
            asyncio.create_task(self._dispatch_loop(), name="webhook-dispatch"),
            asyncio.create_task(self._schedule_loop(), name="webhook-schedule"),
        ]
        if self.settings.webhook_log_cleanup_interval_seconds > 0:
            self._loops.append(asyncio.create_task(self._cleanup_loop(), name="webhook-cleanup"))
        logger.info("Webhook engine started (%d deliveries resumed)", resumed)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        pending = self._loops + list(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._loops = []
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._worker = None
        logger.info("Webhook engine stopped")

    async def resume(self) -> int:
        """Queue every unfinished delivery at its persisted due time."""
        deliveries = await self.log_store.list_unfinished()
        now = utcnow()
        for delivery in deliveries:
            due = as_utc(delivery.next_retry_at)
            delay = max(0.0, (due - now).total_seconds()) if due else 0.0
            self.retry_queue.put(delivery.id, delay)
        return len(deliveries)

    async def drain(self, poll: float = 0.01) -> None:
        """Wait until no event, delivery or buffered dispatch is outstanding."""
        while self._pending_events or self._buffered or self._inflight or len(self.retry_queue):
            await asyncio.sleep(poll)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Intake & dispatch ────────────────────────────────
    def emit(self, event: Any) -> WebhookEvent:
        """Validate and enqueue an event. Returns immediately.

        Raises EventValidationError if the event does not match its type; nothing
        is enqueued in that case.
        """
        try:
            event = parse_event(event)
        except EventValidationError as exc:
            logger.warning("Rejected event from producer: %s", exc)
            raise
        self._events.put_nowait(event)
        self._pending_events += 1
        return event

    async def dispatch(self, event: WebhookEvent) -> list[str]:
        """Create deliveries for the event and schedule them now."""
        delivery_ids = await self.dispatcher.dispatch(event, on_created=self.retry_queue.put)
        if delivery_ids:
            logger.info("Event %s %s -> %d deliveries", event.event.value, event.id, len(delivery_ids))
        return delivery_ids

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.dispatch(event)
            except (RegistryUnavailableError, LogStoreUnavailableError) as exc:
                logger.warning("Storage unavailable, event %s buffered: %s", event.id, exc)
                self._buffer(event)
            except Exception:
                # deliveries are idempotent per (event, webhook), so a partial dispatch is safe to redo
                logger.exception("Dispatch of event %s failed, buffered for retry", event.id)
                self._buffer(event)
            finally:
                self._pending_events -= 1

    def _buffer(self, event: WebhookEvent) -> None:
        self._buffered += 1
        self._spawn(self._redeliver_event(event, self.settings.webhook_registry_retry_seconds))

    async def _redeliver_event(self, event: WebhookEvent, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            self._events.put_nowait(event)
            self._pending_events += 1
        finally:
            self._buffered -= 1

    # ── Delivery attempts ────────────────────────────────
    def _subscription_slot(self, webhook_id: str) -> asyncio.Semaphore:
        slot = self._subscription_slots.get(webhook_id)
        if slot is None:
            slot = asyncio.Semaphore(self.settings.webhook_max_concurrent_per_subscription)
            self._subscription_slots[webhook_id] = slot
        return slot

    @asynccontextmanager
    async def _slots(self, webhook_id: str):
        async with self._subscription_slot(webhook_id), self._global_slots:
            yield

    async def _schedule_loop(self) -> None:
        while True:
            delivery_id = await self.retry_queue.get()
            if delivery_id in self._inflight:
                # an attempt is still running; look again shortly
                self.retry_queue.put(delivery_id, 0.05)
                continue
            self._inflight.add(delivery_id)
            self._spawn(self._run(delivery_id))

    async def _run(self, delivery_id: str) -> None:
        try:
            await self.run_attempt(delivery_id)
        except (RegistryUnavailableError, LogStoreUnavailableError) as exc:
            delay = self.settings.webhook_registry_retry_seconds
            logger.warning("Storage unavailable, delivery %s postponed %.1fs: %s", delivery_id, delay, exc)
            self.retry_queue.put(delivery_id, delay)
        except Exception:
            logger.exception("Attempt for delivery %s crashed", delivery_id)
            self.retry_queue.put(delivery_id, self.settings.webhook_registry_retry_seconds)
        finally:
            self._inflight.discard(delivery_id)

    async def run_attempt(self, delivery_id: str) -> Optional[DeliveryStatus]:
        """Run the next attempt of a delivery, or cancel/defer it. Returns the resulting status."""
        delivery = await self.log_store.get_delivery(delivery_id)
        if delivery is None or delivery.status not in UNFINISHED_STATUSES:
            return None

        config = await self.registry.get(delivery.webhook_id)
        if config is None or not config.is_active:
            reason = "Webhook deleted" if config is None else "Webhook deactivated"
            await self.log_store.finish(delivery_id, DeliveryStatus.CANCELLED, reason)
            self.retry_queue.discard(delivery_id)
            return DeliveryStatus.CANCELLED

        if config.rate_limit.enabled:
            wait = self.rate_limiter.reserve(
                config.id,
                config.rate_limit.max_requests_per_minute,
                config.rate_limit.max_requests_per_hour,
            )
            if wait > 0:
                await self.log_store.defer(delivery_id, utcnow() + timedelta(seconds=wait))
                self.retry_queue.put(delivery_id, wait)
                logger.info("Webhook %s rate limited, delivery %s deferred %.1fs", config.id, delivery_id, wait)
                return DeliveryStatus(delivery.status)

        return await self._attempt(config, delivery)

    async def _attempt(self, config: WebhookConfig, delivery: WebhookDelivery) -> DeliveryStatus:
        async with self._slots(config.id):
            outcome = await self.worker.deliver(config, delivery)

        attempt = (delivery.attempts or 0) + 1
        decision = decide(
            outcome.success,
            attempt,
            delivery.max_attempts,
            config.retry_config,
            retry_after=outcome.retry_after,
            attempt_offset=delivery.attempt_offset or 0,
        )
        recorded = await self.log_store.record_attempt(delivery, attempt, outcome, decision)
        await self.health.observe(config.id, recorded.previous_failures, recorded.consecutive_failures)

        if not decision.is_final:
            self.retry_queue.put(delivery.id, decision.delay_ms / 1000)
            logger.info("Delivery %s attempt %d failed, retrying in %dms", delivery.id, attempt, decision.delay_ms)
            return decision.status

        # a direct call may run while the delivery is still scheduled
        self.retry_queue.discard(delivery.id)
        if decision.status == DeliveryStatus.ABANDONED:
            logger.warning("Delivery %s abandoned after %d attempts", delivery.id, attempt)
        return decision.status

    # ── Management operations ────────────────────────────
    async def send_test(self, config: WebhookConfig) -> WebhookTestResult:
        """Deliver a system.alert test event to one subscription, inline, without retries."""
        event = create_event(
            WebhookEventType.SYSTEM_ALERT,
            {
                "alert_type": "warning",
                "severity": "low",
                "message": "This is a test webhook from VASA",
                "test": True,
            },
            tenant_id=config.tenant_id,
        )
        delivery_id = delivery_id_for(event.id, config.id)
        delivery = WebhookDelivery(
            id=delivery_id,
            webhook_id=config.id,
            event_id=event.id,
            event_type=event.event.value,
            status=DeliveryStatus.PENDING.value,
            max_attempts=1,
            payload=serialize_payload(build_payload(event, config.id, delivery_id)).decode("utf-8"),
        )
        await self.log_store.create_delivery(delivery)
        status = await self._attempt(config, delivery)
        attempts = await self.log_store.list_attempts(delivery_id)
        last = attempts[-1] if attempts else None
        success = status == DeliveryStatus.SUCCESS
        return WebhookTestResult(
            message="Test webhook delivered" if success else "Test webhook failed",
            delivery_id=delivery_id,
            status=status.value,
            success=success,
            response_status=last.response_status if last else None,
            duration_ms=last.response_time_ms if last else 0,
        )

    async def verify_endpoint(self, config: WebhookConfig) -> VerificationOut:
        """Send a challenge; 2xx marks the subscription verified."""
        challenge = secrets.token_hex(16)
        delivery_id = f"verify_{uuid.uuid4().hex}"
        payload = {
            "event": VERIFICATION_EVENT,
            "timestamp": format_timestamp(utcnow()),
            "webhook_id": config.id,
            "delivery_id": delivery_id,
            "api_version": self.settings.webhook_api_version,
            "environment": self.settings.webhook_environment,
            "data": {
                "challenge": challenge,
                "verification_type": "endpoint_verification",
                "webhook_url": config.url,
            },
        }
        probe = WebhookDelivery(
            id=delivery_id,
            webhook_id=config.id,
            event_id=delivery_id,
            event_type=VERIFICATION_EVENT,
            payload=serialize_payload(payload).decode("utf-8"),
        )
        outcome = await self.worker.deliver(config, probe)
        if not outcome.success:
            return VerificationOut(
                success=False,
                message=f"Webhook endpoint verification failed: {outcome.error_message}",
                status_code=outcome.status_code,
            )

        await self.registry.mark_verified(config.id)
        try:
            echoed = json.loads(outcome.response_body).get("challenge") == challenge
        except (json.JSONDecodeError, AttributeError):
            echoed = False
        return VerificationOut(
            success=True,
            message="Webhook endpoint verified successfully" if echoed
            else "Webhook endpoint responded successfully",
            challenge_verified=echoed,
            status_code=outcome.status_code,
        )

    async def replay(self, delivery_id: str) -> WebhookDelivery:
        """Reopen an abandoned or cancelled delivery with a fresh retry budget."""
        delivery = await self.log_store.get_delivery(delivery_id)
        config = await self.registry.get(delivery.webhook_id) if delivery else None
        if delivery is not None and (config is None or not config.is_active):
            raise InvalidDeliveryStateError(f"Webhook {delivery.webhook_id} is not active")
        max_retries = config.retry_config.max_retries if config else 0
        reopened = await self.log_store.reopen(delivery_id, max_retries)
        self.retry_queue.put(delivery_id)
        logger.info("Delivery %s replayed", delivery_id)
        return reopened

    async def cleanup_logs(self, days: Optional[int] = None) -> int:
        return await self.log_store.purge(days or self.settings.webhook_log_retention_days)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.webhook_log_cleanup_interval_seconds)
            try:
                await self.cleanup_logs()
            except Exception:
                logger.exception("Webhook log cleanup failed")
