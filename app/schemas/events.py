"""Webhook event vocabulary — event types, payload shapes, and the wire envelope.

Every event type maps to exactly one data model. An event is validated against
that model when it is constructed, so a malformed or unknown event never gets
as far as the dispatcher. The models only check shape: ``WebhookEvent.data``
keeps the producer's dict exactly as submitted.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from app.config import get_settings
from app.exceptions import EventValidationError
from app.services.signing import serialize_payload

# Fixed namespace so delivery ids can be recomputed from (event id, webhook id)
DELIVERY_NAMESPACE = uuid.UUID("5d3c6f0e-7a4b-4f53-9d2e-8b1c0a9e4f21")


# ── Event Types ──────────────────────────────────────────
class WebhookEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_COMPLETED = "order.completed"
    ORDER_DISPUTED = "order.disputed"

    PAYMENT_PENDING = "payment.pending"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_ADVANCE_PAID = "payment.advance_paid"
    PAYMENT_SHIPMENT_PAID = "payment.shipment_paid"
    PAYMENT_DELIVERY_PAID = "payment.delivery_paid"

    SHIPPING_READY_TO_SHIP = "shipping.ready_to_ship"
    SHIPPING_SHIPPED = "shipping.shipped"
    SHIPPING_IN_TRANSIT = "shipping.in_transit"
    SHIPPING_DELIVERED = "shipping.delivered"
    SHIPPING_DELAYED = "shipping.delayed"
    SHIPPING_RETURNED = "shipping.returned"

    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    PRODUCT_LOW_STOCK = "product.low_stock"
    PRODUCT_OUT_OF_STOCK = "product.out_of_stock"

    USER_VERIFIED = "user.verified"
    USER_SUSPENDED = "user.suspended"
    ACCOUNT_KYC_APPROVED = "account.kyc_approved"
    ACCOUNT_KYC_REJECTED = "account.kyc_rejected"

    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_VERIFIED = "document.verified"
    DOCUMENT_REJECTED = "document.rejected"

    COMPLIANCE_CHECK_REQUIRED = "compliance.check_required"
    COMPLIANCE_CHECK_PASSED = "compliance.check_passed"
    COMPLIANCE_CHECK_FAILED = "compliance.check_failed"

    SYSTEM_MAINTENANCE = "system.maintenance"
    SYSTEM_ALERT = "system.alert"

    @property
    def category(self) -> str:
        prefix = self.value.split(".", 1)[0]
        # account.* events are grouped with user events
        return "user" if prefix == "account" else prefix


EVENT_CATEGORIES: dict[str, list[str]] = {}
for _evt in WebhookEventType:
    EVENT_CATEGORIES.setdefault(_evt.category, []).append(_evt.value)

# Sent by endpoint verification only; not subscribable
VERIFICATION_EVENT = "webhook.verification"


# ── Entities ─────────────────────────────────────────────
class _Entity(BaseModel):
    """Nested entities must be identifiable; everything else is passed through."""

    model_config = ConfigDict(extra="allow")

    id: str


class WebhookUser(_Entity):
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    companyName: Optional[str] = None
    role: Optional[Literal["exporter", "importer", "admin"]] = None
    country: Optional[str] = None


class ProductPricing(BaseModel):
    model_config = ConfigDict(extra="allow")

    basePrice: float
    currency: str
    unit: Optional[str] = None


class WebhookProduct(_Entity):
    title: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    pricing: Optional[ProductPricing] = None
    seller: Optional[WebhookUser] = None


class OrderPricing(BaseModel):
    model_config = ConfigDict(extra="allow")

    subtotal: Optional[float] = None
    total: float
    platformFee: Optional[float] = None
    shippingCost: Optional[float] = None


class WebhookOrder(_Entity):
    orderNumber: Optional[str] = None
    status: Optional[str] = None
    buyer: Optional[WebhookUser] = None
    seller: Optional[WebhookUser] = None
    product: Optional[WebhookProduct] = None
    quantity: Optional[float] = None
    currency: Optional[str] = None
    pricing: Optional[OrderPricing] = None


class WebhookPayment(_Entity):
    orderId: Optional[str] = None
    type: Literal["advance", "shipment", "delivery"]
    amount: float
    currency: str
    status: Literal["pending", "completed", "failed", "refunded"]


class WebhookShipment(_Entity):
    orderId: Optional[str] = None
    carrier: Optional[str] = None
    trackingNumber: Optional[str] = None
    status: Optional[str] = None


class WebhookDocument(_Entity):
    name: Optional[str] = None
    type: Optional[str] = None
    url: Optional[str] = None
    verified: Optional[bool] = None


# ── Event data shapes ────────────────────────────────────
class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")


class OrderData(EventData):
    order: WebhookOrder


class OrderUpdatedData(OrderData):
    previous_status: str
    changes: list[str] = Field(default_factory=list)


class OrderCancelledData(OrderData):
    cancelled_by: WebhookUser
    reason: str
    cancellation_fee: float = 0
    refund_amount: float = 0


class OrderCompletedData(OrderData):
    completion_date: str
    total_amount_paid: float


class Dispute(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    raised_by: WebhookUser
    reason: str
    status: str


class OrderDisputedData(OrderData):
    dispute: Dispute


class PaymentData(EventData):
    payment: WebhookPayment
    order: WebhookOrder


class PaymentPendingData(PaymentData):
    due_date: Optional[str] = None


class PaymentFailedData(PaymentData):
    failure_reason: str
    retry_allowed: bool


class PaymentRefundedData(PaymentData):
    refund_amount: float
    refund_reason: str
    refund_date: str


class ShipmentData(EventData):
    shipment: WebhookShipment
    order: WebhookOrder


class ShippingShippedData(ShipmentData):
    shipped_date: str


class ShippingInTransitData(ShipmentData):
    current_location: Optional[str] = None
    next_checkpoint: Optional[str] = None


class ShippingDeliveredData(ShipmentData):
    delivered_date: str
    received_by: Optional[str] = None


class ShippingDelayedData(ShipmentData):
    delay_reason: str
    new_estimated_delivery: str
    delay_duration_hours: float


class ShippingReturnedData(ShipmentData):
    return_reason: str
    return_date: str


class ProductData(EventData):
    product: WebhookProduct


class ProductUpdatedData(ProductData):
    changes: list[str] = Field(default_factory=list)


class ProductDeletedData(ProductData):
    deleted_by: WebhookUser
    deletion_reason: Optional[str] = None


class ProductLowStockData(ProductData):
    current_stock: float
    reorder_level: float
    stock_shortage: float


class ProductOutOfStockData(ProductData):
    last_sold_date: Optional[str] = None
    pending_orders_count: int


class UserVerifiedData(EventData):
    user: WebhookUser
    verification_date: str
    verified_by: WebhookUser


class UserSuspendedData(EventData):
    user: WebhookUser
    suspended_by: WebhookUser
    suspension_reason: str
    suspension_date: str
    suspension_duration: Optional[str] = None


class KycApprovedData(EventData):
    user: WebhookUser
    approved_by: WebhookUser
    approval_date: str
    verified_documents: list[str]


class KycRejectedData(EventData):
    user: WebhookUser
    rejected_by: WebhookUser
    rejection_date: str
    rejection_reason: str
    required_documents: list[str]


class DocumentData(EventData):
    document: WebhookDocument


class DocumentVerifiedData(DocumentData):
    verification_notes: Optional[str] = None


class DocumentRejectedData(DocumentData):
    rejection_reason: str
    required_action: str


class ComplianceRequiredData(EventData):
    order: WebhookOrder
    compliance_type: str
    required_documents: list[str]
    deadline: str


class ComplianceCheckedData(EventData):
    order: WebhookOrder
    compliance_type: str
    checked_by: WebhookUser
    check_date: str


class CompliancePassedData(ComplianceCheckedData):
    notes: Optional[str] = None


class ComplianceFailedData(ComplianceCheckedData):
    failure_reason: str
    required_action: str


class SystemMaintenanceData(EventData):
    maintenance_type: Literal["scheduled", "emergency"]
    start_time: str
    end_time: str
    affected_services: list[str]
    description: str


class SystemAlertData(EventData):
    alert_type: Literal["security", "performance", "error", "warning"]
    severity: Literal["low", "medium", "high", "critical"]
    message: str
    affected_users: Optional[list[str]] = None
    recommended_action: Optional[str] = None


E = WebhookEventType

EVENT_DATA_MODELS: dict[WebhookEventType, type[EventData]] = {
    E.ORDER_CREATED: OrderData,
    E.ORDER_UPDATED: OrderUpdatedData,
    E.ORDER_CANCELLED: OrderCancelledData,
    E.ORDER_COMPLETED: OrderCompletedData,
    E.ORDER_DISPUTED: OrderDisputedData,
    E.PAYMENT_PENDING: PaymentPendingData,
    E.PAYMENT_COMPLETED: PaymentData,
    E.PAYMENT_FAILED: PaymentFailedData,
    E.PAYMENT_REFUNDED: PaymentRefundedData,
    E.PAYMENT_ADVANCE_PAID: PaymentData,
    E.PAYMENT_SHIPMENT_PAID: PaymentData,
    E.PAYMENT_DELIVERY_PAID: PaymentData,
    E.SHIPPING_READY_TO_SHIP: ShipmentData,
    E.SHIPPING_SHIPPED: ShippingShippedData,
    E.SHIPPING_IN_TRANSIT: ShippingInTransitData,
    E.SHIPPING_DELIVERED: ShippingDeliveredData,
    E.SHIPPING_DELAYED: ShippingDelayedData,
    E.SHIPPING_RETURNED: ShippingReturnedData,
    E.PRODUCT_CREATED: ProductData,
    E.PRODUCT_UPDATED: ProductUpdatedData,
    E.PRODUCT_DELETED: ProductDeletedData,
    E.PRODUCT_LOW_STOCK: ProductLowStockData,
    E.PRODUCT_OUT_OF_STOCK: ProductOutOfStockData,
    E.USER_VERIFIED: UserVerifiedData,
    E.USER_SUSPENDED: UserSuspendedData,
    E.ACCOUNT_KYC_APPROVED: KycApprovedData,
    E.ACCOUNT_KYC_REJECTED: KycRejectedData,
    E.DOCUMENT_UPLOADED: DocumentData,
    E.DOCUMENT_VERIFIED: DocumentVerifiedData,
    E.DOCUMENT_REJECTED: DocumentRejectedData,
    E.COMPLIANCE_CHECK_REQUIRED: ComplianceRequiredData,
    E.COMPLIANCE_CHECK_PASSED: CompliancePassedData,
    E.COMPLIANCE_CHECK_FAILED: ComplianceFailedData,
    E.SYSTEM_MAINTENANCE: SystemMaintenanceData,
    E.SYSTEM_ALERT: SystemAlertData,
}


# ── Envelope ─────────────────────────────────────────────
def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2024-01-15T10:30:00.000Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _default_api_version() -> str:
    return get_settings().webhook_api_version


def _default_environment() -> str:
    return get_settings().webhook_environment


class WebhookEvent(BaseModel):
    """An immutable domain event submitted by a producer."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_event_id)
    event: WebhookEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    api_version: str = Field(default_factory=_default_api_version)
    environment: str = Field(default_factory=_default_environment)
    tenant_id: Optional[str] = None
    data: dict[str, Any]

    @model_validator(mode="after")
    def _check_data_shape(self):
        EVENT_DATA_MODELS[self.event].model_validate(self.data)
        try:
            serialize_payload(self.data)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"data is not JSON serializable: {exc}") from exc
        return self


def parse_event(raw: Any) -> WebhookEvent:
    """Validate producer input into a WebhookEvent or raise EventValidationError."""
    if isinstance(raw, WebhookEvent):
        return raw
    try:
        return WebhookEvent.model_validate(raw)
    except ValidationError as exc:
        event_type = raw.get("event") if isinstance(raw, dict) else None
        raise EventValidationError(event_type, str(exc)) from exc


def create_event(event_type: str | WebhookEventType, data: dict, **kwargs) -> WebhookEvent:
    return parse_event({"event": event_type, "data": data, **kwargs})


def delivery_id_for(event_id: str, webhook_id: str) -> str:
    """Deterministic delivery id for one (event, subscription) pairing."""
    return str(uuid.uuid5(DELIVERY_NAMESPACE, f"{event_id}:{webhook_id}"))


def build_payload(event: WebhookEvent, webhook_id: str, delivery_id: str) -> dict:
    """The JSON envelope subscribers receive."""
    return {
        "event": event.event.value,
        "timestamp": format_timestamp(event.timestamp),
        "webhook_id": webhook_id,
        "delivery_id": delivery_id,
        "api_version": event.api_version,
        "environment": event.environment,
        "data": event.data,
    }
