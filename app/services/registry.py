"""Subscription registry — the engine's read access to webhook configs."""

import json
import logging
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import RegistryUnavailableError
from app.models import WebhookEndpoint, utcnow
from app.schemas import WebhookConfig

logger = logging.getLogger(__name__)


class SubscriptionRegistry(Protocol):
    async def list_active_for(self, event_type: str, tenant_id: Optional[str] = None) -> list[WebhookConfig]: ...

    async def get(self, webhook_id: str) -> Optional[WebhookConfig]: ...

    async def deactivate(self, webhook_id: str, reason: str) -> None: ...

    async def mark_verified(self, webhook_id: str) -> None: ...


class SqlSubscriptionRegistry:
    """Registry backed by the webhook_endpoints table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_active_for(self, event_type: str, tenant_id: Optional[str] = None) -> list[WebhookConfig]:
        stmt = select(WebhookEndpoint).where(WebhookEndpoint.is_active.is_(True))
        if tenant_id:
            stmt = stmt.where(WebhookEndpoint.tenant_id == tenant_id)
        try:
            async with self._session_factory() as db:
                endpoints = (await db.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise RegistryUnavailableError(str(exc)) from exc

        # events is JSON text, so the subscription check happens here
        configs = []
        for ep in endpoints:
            try:
                events = json.loads(ep.events or "[]")
            except (json.JSONDecodeError, TypeError):
                logger.warning("Webhook %s has unreadable events list", ep.id)
                continue
            if event_type in events:
                configs.append(WebhookConfig.from_model(ep))
        return configs

    async def get(self, webhook_id: str) -> Optional[WebhookConfig]:
        try:
            async with self._session_factory() as db:
                ep = await db.get(WebhookEndpoint, webhook_id)
        except SQLAlchemyError as exc:
            raise RegistryUnavailableError(str(exc)) from exc
        return WebhookConfig.from_model(ep) if ep else None

    async def deactivate(self, webhook_id: str, reason: str) -> None:
        async with self._session_factory() as db:
            ep = await db.get(WebhookEndpoint, webhook_id)
            if ep is None or not ep.is_active:
                return
            ep.is_active = False
            ep.disabled_at = utcnow()
            ep.disabled_reason = reason[:200]
            await db.commit()
        logger.warning("Webhook %s disabled: %s", webhook_id, reason)

    async def mark_verified(self, webhook_id: str) -> None:
        async with self._session_factory() as db:
            ep = await db.get(WebhookEndpoint, webhook_id)
            if ep is None:
                return
            ep.is_verified = True
            ep.verified_at = utcnow()
            ep.consecutive_failures = 0
            await db.commit()
