"""Delivery log store — delivery rows, the append-only attempt log and the health counter."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import DeliveryNotFoundError, InvalidDeliveryStateError, LogStoreUnavailableError
from app.models import WebhookDelivery, WebhookDeliveryAttempt, WebhookEndpoint, utcnow
from app.services.delivery_worker import AttemptOutcome
from app.services.retry import REPLAYABLE_STATUSES, UNFINISHED_STATUSES, DeliveryStatus, RetryDecision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordedAttempt:
    delivery: WebhookDelivery
    previous_failures: int
    consecutive_failures: int


def attempt_row(delivery: WebhookDelivery, attempt: int, outcome: AttemptOutcome,
                decision: RetryDecision) -> WebhookDeliveryAttempt:
    return WebhookDeliveryAttempt(
        delivery_id=delivery.id,
        webhook_id=delivery.webhook_id,
        event_type=delivery.event_type,
        attempt=attempt,
        status=decision.status.value,
        success=outcome.success,
        request_url=outcome.request_url,
        request_method=outcome.request_method,
        request_headers=json.dumps(outcome.request_headers),
        response_status=outcome.status_code,
        response_body=outcome.response_body,
        response_time_ms=outcome.response_time_ms,
        error_message=outcome.error_message,
        error_type=outcome.error_type,
        retry_delay_ms=decision.delay_ms,
    )


def apply_decision(delivery: WebhookDelivery, attempt: int, outcome: AttemptOutcome,
                   decision: RetryDecision, now: datetime) -> None:
    delivery.attempts = attempt
    delivery.status = decision.status.value
    delivery.last_error = "" if outcome.success else (outcome.error_message or "")
    if decision.status == DeliveryStatus.RETRY:
        delivery.next_retry_at = now + timedelta(milliseconds=decision.delay_ms or 0)
    else:
        delivery.next_retry_at = None
        delivery.completed_at = now


def reopen_delivery(delivery: WebhookDelivery, max_retries: int, now: datetime) -> None:
    if delivery.status not in REPLAYABLE_STATUSES:
        raise InvalidDeliveryStateError(f"Delivery {delivery.id} is {delivery.status}, cannot replay")
    delivery.attempt_offset = delivery.attempts
    delivery.max_attempts = delivery.attempts + max_retries + 1
    delivery.status = DeliveryStatus.PENDING.value
    delivery.next_retry_at = now
    delivery.completed_at = None
    delivery.last_error = ""


class DeliveryLogStore(Protocol):
    async def create_delivery(self, delivery: WebhookDelivery) -> bool: ...

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]: ...

    async def list_unfinished(self) -> list[WebhookDelivery]: ...

    async def record_attempt(self, delivery: WebhookDelivery, attempt: int, outcome: AttemptOutcome,
                             decision: RetryDecision) -> RecordedAttempt: ...

    async def defer(self, delivery_id: str, next_retry_at: datetime) -> None: ...

    async def finish(self, delivery_id: str, status: DeliveryStatus, reason: str) -> None: ...

    async def reopen(self, delivery_id: str, max_retries: int) -> WebhookDelivery: ...

    async def list_attempts(self, delivery_id: str) -> list[WebhookDeliveryAttempt]: ...

    async def purge(self, older_than_days: int) -> int: ...


class SqlDeliveryLogStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_delivery(self, delivery: WebhookDelivery) -> bool:
        """Insert a new delivery; False if one with the same id already exists."""
        try:
            async with self._session_factory() as db:
                if await db.get(WebhookDelivery, delivery.id) is not None:
                    return False
                db.add(delivery)
                await db.commit()
        except IntegrityError:
            # inserted concurrently under the same id
            return False
        except SQLAlchemyError as exc:
            raise LogStoreUnavailableError(str(exc)) from exc
        return True

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        async with self._session_factory() as db:
            return await db.get(WebhookDelivery, delivery_id)

    async def list_unfinished(self) -> list[WebhookDelivery]:
        stmt = (
            select(WebhookDelivery)
            .where(WebhookDelivery.status.in_(UNFINISHED_STATUSES))
            .order_by(WebhookDelivery.created_at)
        )
        async with self._session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def record_attempt(self, delivery: WebhookDelivery, attempt: int, outcome: AttemptOutcome,
                             decision: RetryDecision) -> RecordedAttempt:
        """Append the attempt, advance the delivery and move the health counter in one transaction."""
        now = utcnow()
        async with self._session_factory() as db:
            row = await db.get(WebhookDelivery, delivery.id)
            if row is None:
                raise DeliveryNotFoundError(delivery.id)
            apply_decision(row, attempt, outcome, decision, now)
            db.add(attempt_row(row, attempt, outcome, decision))

            counter = select(WebhookEndpoint.consecutive_failures).where(WebhookEndpoint.id == row.webhook_id)
            previous = (await db.execute(counter)).scalar_one_or_none()
            current = 0
            if previous is not None:
                await db.execute(
                    update(WebhookEndpoint)
                    .where(WebhookEndpoint.id == row.webhook_id)
                    .values(
                        consecutive_failures=0 if outcome.success else WebhookEndpoint.consecutive_failures + 1,
                        last_triggered_at=now,
                    )
                )
                current = (await db.execute(counter)).scalar_one()
            await db.commit()
        return RecordedAttempt(row, previous or 0, current)

    async def defer(self, delivery_id: str, next_retry_at: datetime) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .values(next_retry_at=next_retry_at, updated_at=utcnow())
            )
            await db.commit()

    async def finish(self, delivery_id: str, status: DeliveryStatus, reason: str) -> None:
        now = utcnow()
        async with self._session_factory() as db:
            row = await db.get(WebhookDelivery, delivery_id)
            if row is None:
                raise DeliveryNotFoundError(delivery_id)
            row.status = status.value
            row.last_error = reason
            row.next_retry_at = None
            row.completed_at = now
            await db.commit()
        logger.info("Delivery %s %s: %s", delivery_id, status.value, reason)

    async def reopen(self, delivery_id: str, max_retries: int) -> WebhookDelivery:
        async with self._session_factory() as db:
            row = await db.get(WebhookDelivery, delivery_id)
            if row is None:
                raise DeliveryNotFoundError(delivery_id)
            reopen_delivery(row, max_retries, utcnow())
            await db.commit()
        return row

    async def list_attempts(self, delivery_id: str) -> list[WebhookDeliveryAttempt]:
        stmt = (
            select(WebhookDeliveryAttempt)
            .where(WebhookDeliveryAttempt.delivery_id == delivery_id)
            .order_by(WebhookDeliveryAttempt.attempt)
        )
        async with self._session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def purge(self, older_than_days: int) -> int:
        """Delete finished deliveries (and their attempts) created before the cutoff."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        finished = (
            select(WebhookDelivery.id)
            .where(WebhookDelivery.created_at < cutoff)
            .where(WebhookDelivery.status.not_in(UNFINISHED_STATUSES))
        )
        async with self._session_factory() as db:
            ids = list((await db.execute(finished)).scalars().all())
            if ids:
                await db.execute(delete(WebhookDeliveryAttempt).where(WebhookDeliveryAttempt.delivery_id.in_(ids)))
                await db.execute(delete(WebhookDelivery).where(WebhookDelivery.id.in_(ids)))
                await db.commit()
        if ids:
            logger.info("Purged %d deliveries older than %d days", len(ids), older_than_days)
        return len(ids)
