"""Delivery statistics — derived from the attempt log on demand, never stored."""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import WebhookDelivery, WebhookDeliveryAttempt, WebhookEndpoint, as_utc, utcnow
from app.schemas import DeliveryLogOut, DeliveryLogPage
from app.services.health import health_status
from app.services.retry import DeliveryStatus, UNFINISHED_STATUSES


# ── Response Schemas ─────────────────────────────────────
class WebhookStats(BaseModel):
    webhook_id: str
    timeframe_hours: Optional[int] = None
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float  # percent, 2 decimals
    average_response_time: float  # ms
    max_response_time: int
    min_response_time: int
    last_delivery_at: Optional[datetime] = None
    abandoned_deliveries: int
    cancelled_deliveries: int
    pending_deliveries: int
    error_breakdown: dict[str, int]
    consecutive_failures: int
    is_healthy: bool
    health_status: str


class TenantStats(BaseModel):
    tenant_id: Optional[str] = None
    total_webhooks: int
    active_webhooks: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float


def success_rate(successful: int, total: int) -> float:
    if not total:
        return 0.0
    return round(successful / total * 100, 2)


# ── Service ──────────────────────────────────────────────
async def get_webhook_stats(db: AsyncSession, webhook: WebhookEndpoint,
                            hours: Optional[int] = None) -> WebhookStats:
    """Stats for one subscription; each HTTP attempt counts as one delivery."""
    since = utcnow() - timedelta(hours=hours) if hours else None

    attempts = select(
        func.count(WebhookDeliveryAttempt.id),
        func.sum(case((WebhookDeliveryAttempt.success.is_(True), 1), else_=0)),
        func.avg(WebhookDeliveryAttempt.response_time_ms),
        func.max(WebhookDeliveryAttempt.response_time_ms),
        func.min(WebhookDeliveryAttempt.response_time_ms),
        func.max(WebhookDeliveryAttempt.created_at),
    ).where(WebhookDeliveryAttempt.webhook_id == webhook.id)
    if since is not None:
        attempts = attempts.where(WebhookDeliveryAttempt.created_at >= since)
    total, successful, avg_ms, max_ms, min_ms, last_at = (await db.execute(attempts)).one()
    total = total or 0
    successful = successful or 0

    errors = (
        select(WebhookDeliveryAttempt.error_type, func.count(WebhookDeliveryAttempt.id))
        .where(WebhookDeliveryAttempt.webhook_id == webhook.id)
        .where(WebhookDeliveryAttempt.error_type.is_not(None))
        .group_by(WebhookDeliveryAttempt.error_type)
    )
    if since is not None:
        errors = errors.where(WebhookDeliveryAttempt.created_at >= since)
    error_breakdown = dict((await db.execute(errors)).all())

    statuses = (
        select(WebhookDelivery.status, func.count(WebhookDelivery.id))
        .where(WebhookDelivery.webhook_id == webhook.id)
        .group_by(WebhookDelivery.status)
    )
    if since is not None:
        statuses = statuses.where(WebhookDelivery.created_at >= since)
    by_status = dict((await db.execute(statuses)).all())

    failures = webhook.consecutive_failures or 0
    return WebhookStats(
        webhook_id=webhook.id,
        timeframe_hours=hours,
        total_deliveries=total,
        successful_deliveries=successful,
        failed_deliveries=total - successful,
        success_rate=success_rate(successful, total),
        average_response_time=round(float(avg_ms or 0), 2),
        max_response_time=max_ms or 0,
        min_response_time=min_ms or 0,
        last_delivery_at=as_utc(last_at),
        abandoned_deliveries=by_status.get(DeliveryStatus.ABANDONED.value, 0),
        cancelled_deliveries=by_status.get(DeliveryStatus.CANCELLED.value, 0),
        pending_deliveries=sum(by_status.get(s, 0) for s in UNFINISHED_STATUSES),
        error_breakdown=error_breakdown,
        consecutive_failures=failures,
        is_healthy=failures == 0,
        health_status=health_status(failures, bool(webhook.is_active)).value,
    )


async def get_tenant_stats(db: AsyncSession, tenant_id: Optional[str] = None) -> TenantStats:
    webhooks = select(
        func.count(WebhookEndpoint.id),
        func.sum(case((WebhookEndpoint.is_active.is_(True), 1), else_=0)),
    )
    attempts = select(
        func.count(WebhookDeliveryAttempt.id),
        func.sum(case((WebhookDeliveryAttempt.success.is_(True), 1), else_=0)),
    )
    if tenant_id:
        webhooks = webhooks.where(WebhookEndpoint.tenant_id == tenant_id)
        owned = select(WebhookEndpoint.id).where(WebhookEndpoint.tenant_id == tenant_id)
        attempts = attempts.where(WebhookDeliveryAttempt.webhook_id.in_(owned))

    total_webhooks, active_webhooks = (await db.execute(webhooks)).one()
    total, successful = (await db.execute(attempts)).one()
    total = total or 0
    successful = successful or 0
    return TenantStats(
        tenant_id=tenant_id,
        total_webhooks=total_webhooks or 0,
        active_webhooks=active_webhooks or 0,
        total_deliveries=total,
        successful_deliveries=successful,
        failed_deliveries=total - successful,
        success_rate=success_rate(successful, total),
    )


async def list_delivery_logs(
    db: AsyncSession,
    webhook_id: str,
    page: int = 1,
    limit: int = 50,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
) -> DeliveryLogPage:
    """Deliveries for a subscription, newest first, each with its attempt history."""
    base = select(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id)
    if status:
        base = base.where(WebhookDelivery.status == status)
    if event_type:
        base = base.where(WebhookDelivery.event_type == event_type)

    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar_one()
    stmt = base.order_by(WebhookDelivery.created_at.desc()).offset((page - 1) * limit).limit(limit)
    deliveries = (await db.execute(stmt)).scalars().all()

    history: dict[str, list[WebhookDeliveryAttempt]] = {d.id: [] for d in deliveries}
    if deliveries:
        rows = await db.execute(
            select(WebhookDeliveryAttempt)
            .where(WebhookDeliveryAttempt.delivery_id.in_(list(history)))
            .order_by(WebhookDeliveryAttempt.attempt)
        )
        for row in rows.scalars():
            history[row.delivery_id].append(row)

    return DeliveryLogPage(
        items=[DeliveryLogOut.from_model(d, history[d.id]) for d in deliveries],
        total=total,
        page=page,
        limit=limit,
    )
