"""Webhook dispatch — fan an event out to matching subscriptions as pending deliveries."""

import logging
from typing import Any, Callable, Optional

from app.models import WebhookDelivery
from app.schemas import WebhookFilters
from app.schemas.events import WebhookEvent, build_payload, delivery_id_for
from app.services.retry import DeliveryStatus
from app.services.signing import serialize_payload

logger = logging.getLogger(__name__)


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def order_total(data: dict) -> Optional[float]:
    total = _dig(data, "order", "pricing", "total")
    if total is None:
        total = _dig(data, "order", "total")
    try:
        return float(total) if total is not None else None
    except (TypeError, ValueError):
        return None


def payload_countries(data: dict) -> set[str]:
    order = data.get("order")
    if not isinstance(order, dict):
        return set()
    candidates = (
        _dig(order, "buyer", "country"),
        _dig(order, "seller", "country"),
        _dig(order, "shipping", "shippingAddress", "country"),
    )
    return {c for c in candidates if c}


def product_category(data: dict) -> Optional[str]:
    return _dig(data, "product", "category") or _dig(data, "order", "product", "category")


def has_product(data: dict) -> bool:
    return isinstance(data.get("product"), dict) or isinstance(_dig(data, "order", "product"), dict)


def matches_filters(filters: Optional[WebhookFilters], data: dict) -> bool:
    """True unless a configured predicate rejects the payload.

    Predicates are ANDed and an empty predicate does not reject. Status, payment
    type and category predicates apply once the payload carries the entity they
    describe; an order without a status then fails an order_statuses filter.
    Order value and country predicates only reject on a value that is present.
    """
    if filters is None:
        return True

    if filters.order_statuses:
        if isinstance(data.get("order"), dict) and _dig(data, "order", "status") not in filters.order_statuses:
            return False

    if filters.payment_types:
        if isinstance(data.get("payment"), dict) and _dig(data, "payment", "type") not in filters.payment_types:
            return False

    if filters.min_order_value is not None:
        total = order_total(data)
        if total is not None and total < filters.min_order_value:
            return False

    if filters.countries:
        countries = payload_countries(data)
        if countries and not countries & set(filters.countries):
            return False

    if filters.product_categories:
        if has_product(data) and product_category(data) not in filters.product_categories:
            return False

    return True


class Dispatcher:
    def __init__(self, registry, log_store):
        self.registry = registry
        self.log_store = log_store

    async def dispatch(self, event: WebhookEvent,
                       on_created: Optional[Callable[[str], None]] = None) -> list[str]:
        """Create one pending delivery per matching subscription; return the new delivery ids.

        Raises RegistryUnavailableError when subscriptions cannot be read.
        Deliveries already created for this event are not created again.
        ``on_created`` is called with each new id as soon as its row exists, so
        deliveries created before a failure part way through are not lost.
        """
        subscriptions = await self.registry.list_active_for(event.event.value, event.tenant_id)
        created = []
        for config in subscriptions:
            if not matches_filters(config.filters, event.data):
                logger.debug("Webhook %s filtered out %s %s", config.id, event.event.value, event.id)
                continue
            delivery_id = delivery_id_for(event.id, config.id)
            body = serialize_payload(build_payload(event, config.id, delivery_id))
            delivery = WebhookDelivery(
                id=delivery_id,
                webhook_id=config.id,
                event_id=event.id,
                event_type=event.event.value,
                status=DeliveryStatus.PENDING.value,
                max_attempts=config.retry_config.max_retries + 1,
                payload=body.decode("utf-8"),
            )
            if await self.log_store.create_delivery(delivery):
                created.append(delivery_id)
                if on_created is not None:
                    on_created(delivery_id)
        if not created:
            logger.debug("No new deliveries for %s %s", event.event.value, event.id)
        return created
