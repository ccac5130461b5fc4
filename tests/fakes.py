"""In-memory stand-ins for the registry, the log store and a subscriber endpoint."""

import asyncio
import json
from datetime import timedelta
from typing import Optional

import httpx

from app.exceptions import DeliveryNotFoundError, RegistryUnavailableError
from app.models import WebhookDelivery, utcnow
from app.schemas import RetryConfig, WebhookConfig
from app.services.log_store import RecordedAttempt, apply_decision, attempt_row, reopen_delivery
from app.services.retry import UNFINISHED_STATUSES


def make_config(webhook_id: str = "wh_1", events=("order.created",), **overrides) -> WebhookConfig:
    values = {
        "id": webhook_id,
        "name": f"hook {webhook_id}",
        "url": f"https://subscriber.example/{webhook_id}",
        "events": list(events),
        "secret": "s3cret",
        "retry_config": RetryConfig(max_retries=2, retry_delay=10, backoff_multiplier=2, timeout=1000),
    }
    values.update(overrides)
    return WebhookConfig(**values)


class InMemorySubscriptionRegistry:
    def __init__(self, *configs: WebhookConfig):
        self.configs = {c.id: c for c in configs}
        self.failures_left = 0
        self.verified: set[str] = set()
        self.calls = 0

    def add(self, config: WebhookConfig) -> None:
        self.configs[config.id] = config

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self.failures_left > 0:
            self.failures_left -= 1
            raise RegistryUnavailableError("registry down")

    async def list_active_for(self, event_type: str, tenant_id: Optional[str] = None) -> list[WebhookConfig]:
        self._maybe_fail()
        return [
            c for c in self.configs.values()
            if c.is_active and c.subscribes_to(event_type) and (not tenant_id or c.tenant_id == tenant_id)
        ]

    async def get(self, webhook_id: str) -> Optional[WebhookConfig]:
        self._maybe_fail()
        return self.configs.get(webhook_id)

    async def deactivate(self, webhook_id: str, reason: str) -> None:
        config = self.configs.get(webhook_id)
        if config is not None:
            self.configs[webhook_id] = config.model_copy(update={"is_active": False})

    async def mark_verified(self, webhook_id: str) -> None:
        self.verified.add(webhook_id)


class InMemoryDeliveryLogStore:
    def __init__(self):
        self.deliveries: dict[str, WebhookDelivery] = {}
        self.attempts = []
        self.consecutive_failures: dict[str, int] = {}

    async def create_delivery(self, delivery: WebhookDelivery) -> bool:
        if delivery.id in self.deliveries:
            return False
        self.deliveries[delivery.id] = delivery
        return True

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return self.deliveries.get(delivery_id)

    async def list_unfinished(self) -> list[WebhookDelivery]:
        return [d for d in self.deliveries.values() if d.status in UNFINISHED_STATUSES]

    async def record_attempt(self, delivery, attempt, outcome, decision) -> RecordedAttempt:
        row = self.deliveries[delivery.id]
        apply_decision(row, attempt, outcome, decision, utcnow())
        self.attempts.append(attempt_row(row, attempt, outcome, decision))
        previous = self.consecutive_failures.get(row.webhook_id, 0)
        current = 0 if outcome.success else previous + 1
        self.consecutive_failures[row.webhook_id] = current
        return RecordedAttempt(row, previous, current)

    async def defer(self, delivery_id, next_retry_at) -> None:
        self.deliveries[delivery_id].next_retry_at = next_retry_at

    async def finish(self, delivery_id, status, reason) -> None:
        row = self.deliveries[delivery_id]
        row.status = status.value
        row.last_error = reason
        row.next_retry_at = None
        row.completed_at = utcnow()

    async def reopen(self, delivery_id, max_retries) -> WebhookDelivery:
        row = self.deliveries.get(delivery_id)
        if row is None:
            raise DeliveryNotFoundError(delivery_id)
        reopen_delivery(row, max_retries, utcnow())
        return row

    async def list_attempts(self, delivery_id):
        return [a for a in self.attempts if a.delivery_id == delivery_id]

    async def purge(self, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        old = [d.id for d in self.deliveries.values()
               if d.status not in UNFINISHED_STATUSES and d.created_at < cutoff]
        for delivery_id in old:
            del self.deliveries[delivery_id]
        self.attempts = [a for a in self.attempts if a.delivery_id not in old]
        return len(old)

    def attempts_for(self, delivery_id: str):
        return [a for a in self.attempts if a.delivery_id == delivery_id]


class Receiver:
    """Scripted subscriber endpoint for httpx.MockTransport.

    ``responses`` is consumed in order; each item is a status code, an
    httpx.Response, a callable taking the request, or an exception to raise. When empty, ``default``
    is used.
    """

    def __init__(self, *responses, default=200, delay: float = 0.0):
        self.responses = list(responses)
        self.default = default
        self.delay = delay
        self.requests: list[httpx.Request] = []
        self.active = 0
        self.max_active = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            item = self.responses.pop(0) if self.responses else self.default
        finally:
            self.active -= 1
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(item, json={"received": True})

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]
