"""Webhook subscription management, delivery logs and stats API."""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.exceptions import DeliveryNotFoundError, InvalidDeliveryStateError
from app.models import WebhookEndpoint, utcnow
from app.schemas import (
    DeliveryLogOut,
    DeliveryLogPage,
    SecretOut,
    VerificationOut,
    WebhookConfig,
    WebhookCreate,
    WebhookOut,
    WebhookTestResult,
    WebhookUpdate,
)
from app.schemas.events import EVENT_CATEGORIES
from app.services.health import health_status
from app.services.signing import generate_secret, mask_secret
from app.services.stats import TenantStats, WebhookStats, get_tenant_stats, get_webhook_stats, list_delivery_logs

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_engine(request: Request):
    return request.app.state.engine


def _out(wh: WebhookEndpoint, secret: Optional[str] = None) -> WebhookOut:
    status = health_status(wh.consecutive_failures or 0, bool(wh.is_active)).value
    return WebhookOut.from_model(wh, status, secret or mask_secret(wh.secret))


async def _get_or_404(db: AsyncSession, webhook_id: str) -> WebhookEndpoint:
    wh = await db.get(WebhookEndpoint, webhook_id)
    if not wh:
        raise HTTPException(404, "Webhook not found")
    return wh


# ── Catalogue & tenant stats ─────────────────────────────
@router.get("/events", response_model=dict[str, list[str]])
async def list_event_types():
    """Subscribable event types grouped by category."""
    return EVENT_CATEGORIES


@router.get("/stats", response_model=TenantStats)
async def tenant_stats(tenant_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    return await get_tenant_stats(db, tenant_id)


# ── CRUD ─────────────────────────────────────────────────
@router.post("/", response_model=WebhookOut, status_code=201)
async def create_webhook(data: WebhookCreate, db: AsyncSession = Depends(get_db)):
    settings = get_settings()
    count = (await db.execute(
        select(func.count(WebhookEndpoint.id)).where(WebhookEndpoint.tenant_id == data.tenant_id)
    )).scalar_one()
    if count >= settings.webhook_max_per_tenant:
        raise HTTPException(400, f"Maximum of {settings.webhook_max_per_tenant} webhooks per tenant reached")

    secret = generate_secret() if data.signed else None
    wh = WebhookEndpoint(
        tenant_id=data.tenant_id,
        name=data.name,
        description=data.description,
        url=data.url,
        method=data.method,
        events=json.dumps([e.value for e in data.events]),
        secret=secret,
        headers=json.dumps(data.headers),
        max_retries=data.retry_config.max_retries,
        retry_delay_ms=data.retry_config.retry_delay,
        backoff_multiplier=data.retry_config.backoff_multiplier,
        timeout_ms=data.retry_config.timeout,
        filters=data.filters.model_dump_json(exclude_none=True) if data.filters else None,
        rate_limit_enabled=data.rate_limit.enabled,
        max_requests_per_minute=data.rate_limit.max_requests_per_minute,
        max_requests_per_hour=data.rate_limit.max_requests_per_hour,
        tags=json.dumps(data.tags),
    )
    db.add(wh)
    await db.commit()
    await db.refresh(wh)
    # the full secret is only ever shown here and on regeneration
    return _out(wh, secret)


@router.get("/", response_model=list[WebhookOut])
async def list_webhooks(
    tenant_id: Optional[str] = None,
    active: Optional[bool] = None,
    event: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(WebhookEndpoint)
    if tenant_id:
        stmt = stmt.where(WebhookEndpoint.tenant_id == tenant_id)
    if active is not None:
        stmt = stmt.where(WebhookEndpoint.is_active == active)
    if event:
        # events is stored as a JSON array of quoted names
        stmt = stmt.where(WebhookEndpoint.events.contains(json.dumps(event), autoescape=True))
    stmt = stmt.order_by(WebhookEndpoint.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return [_out(wh) for wh in result.scalars().all()]


@router.get("/{webhook_id}", response_model=WebhookOut)
async def get_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    return _out(await _get_or_404(db, webhook_id))


@router.put("/{webhook_id}", response_model=WebhookOut)
@router.patch("/{webhook_id}", response_model=WebhookOut)
async def update_webhook(webhook_id: str, data: WebhookUpdate, db: AsyncSession = Depends(get_db)):
    wh = await _get_or_404(db, webhook_id)
    updates = data.model_dump(exclude_unset=True)

    for key in ("name", "description", "url", "method"):
        if key in updates:
            setattr(wh, key, updates[key])
    if "events" in updates:
        wh.events = json.dumps([e.value for e in data.events])
    if "headers" in updates:
        wh.headers = json.dumps(data.headers or {})
    if "tags" in updates:
        wh.tags = json.dumps(data.tags or [])
    if "filters" in updates:
        wh.filters = data.filters.model_dump_json(exclude_none=True) if data.filters else None
    if data.retry_config is not None:
        wh.max_retries = data.retry_config.max_retries
        wh.retry_delay_ms = data.retry_config.retry_delay
        wh.backoff_multiplier = data.retry_config.backoff_multiplier
        wh.timeout_ms = data.retry_config.timeout
    if data.rate_limit is not None:
        wh.rate_limit_enabled = data.rate_limit.enabled
        wh.max_requests_per_minute = data.rate_limit.max_requests_per_minute
        wh.max_requests_per_hour = data.rate_limit.max_requests_per_hour

    if data.is_active is True and not wh.is_active:
        # Re-enabling starts from a clean health record
        wh.is_active = True
        wh.consecutive_failures = 0
        wh.disabled_at = None
        wh.disabled_reason = None
    elif data.is_active is False and wh.is_active:
        wh.is_active = False
        wh.disabled_at = utcnow()
        wh.disabled_reason = "Disabled by user"

    await db.commit()
    await db.refresh(wh)
    return _out(wh)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    wh = await _get_or_404(db, webhook_id)
    await db.delete(wh)
    await db.commit()


# ── Operations ───────────────────────────────────────────
@router.post("/{webhook_id}/test", response_model=WebhookTestResult)
async def test_webhook(webhook_id: str, db: AsyncSession = Depends(get_db), engine=Depends(get_engine)):
    """Send a system.alert test delivery and wait for the result."""
    wh = await _get_or_404(db, webhook_id)
    return await engine.send_test(WebhookConfig.from_model(wh))


@router.post("/{webhook_id}/verify", response_model=VerificationOut)
async def verify_webhook(webhook_id: str, db: AsyncSession = Depends(get_db), engine=Depends(get_engine)):
    wh = await _get_or_404(db, webhook_id)
    return await engine.verify_endpoint(WebhookConfig.from_model(wh))


@router.post("/{webhook_id}/regenerate-secret", response_model=SecretOut)
async def regenerate_secret(webhook_id: str, db: AsyncSession = Depends(get_db)):
    wh = await _get_or_404(db, webhook_id)
    wh.secret = generate_secret()
    await db.commit()
    return SecretOut(webhook_id=wh.id, secret=wh.secret, message="Webhook secret regenerated successfully")


@router.post("/{webhook_id}/reset-health", response_model=WebhookOut)
async def reset_health(webhook_id: str, db: AsyncSession = Depends(get_db)):
    wh = await _get_or_404(db, webhook_id)
    wh.consecutive_failures = 0
    await db.commit()
    await db.refresh(wh)
    return _out(wh)


@router.get("/{webhook_id}/logs", response_model=DeliveryLogPage)
async def webhook_logs(
    webhook_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    await _get_or_404(db, webhook_id)
    return await list_delivery_logs(db, webhook_id, page=page, limit=limit, status=status, event_type=event_type)


@router.get("/{webhook_id}/stats", response_model=WebhookStats)
async def webhook_stats(
    webhook_id: str,
    hours: Optional[int] = Query(None, ge=1, le=24 * 365, description="Omit for all-time totals"),
    db: AsyncSession = Depends(get_db),
):
    wh = await _get_or_404(db, webhook_id)
    return await get_webhook_stats(db, wh, hours)


@router.post("/deliveries/{delivery_id}/replay", response_model=DeliveryLogOut)
async def replay_delivery(delivery_id: str, engine=Depends(get_engine)):
    """Re-send an abandoned or cancelled delivery with the same id and body."""
    try:
        delivery = await engine.replay(delivery_id)
    except DeliveryNotFoundError:
        raise HTTPException(404, "Delivery not found")
    except InvalidDeliveryStateError as exc:
        raise HTTPException(409, str(exc))
    return DeliveryLogOut.from_model(delivery)
