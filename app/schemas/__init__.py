"""Pydantic schemas for subscription config and API request/response."""

import json
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas.events import WebhookEventType

HttpMethod = Literal["POST", "PUT", "PATCH"]


def _check_headers(headers: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
    """Header names and values must be printable ASCII to go on the wire."""
    for name, value in (headers or {}).items():
        for part in (name, value):
            if not part.isascii() or not part.isprintable():
                raise ValueError(f"Header {name!r} must contain printable ASCII only")
        if not name or " " in name or ":" in name:
            raise ValueError(f"Invalid header name {name!r}")
    return headers


def _load_json(raw, default):
    if raw is None:
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


# ── Subscription policy ──────────────────────────────────
class RetryConfig(BaseModel):
    max_retries: int = Field(3, ge=0, le=10)
    retry_delay: int = Field(1000, ge=1, le=3_600_000)  # ms before the first retry
    backoff_multiplier: float = Field(2.0, ge=1, le=10)
    timeout: int = Field(30000, gt=0, le=120_000)  # ms per HTTP attempt


class WebhookFilters(BaseModel):
    order_statuses: Optional[list[str]] = None
    payment_types: Optional[list[str]] = None
    min_order_value: Optional[float] = None
    countries: Optional[list[str]] = None
    product_categories: Optional[list[str]] = None


class RateLimitConfig(BaseModel):
    enabled: bool = False
    max_requests_per_minute: int = Field(60, ge=1, le=1000)
    max_requests_per_hour: int = Field(1000, ge=1, le=10000)


class WebhookConfig(BaseModel):
    """Engine-side, read-only view of a subscription."""

    id: str
    tenant_id: str = "default"
    name: str = ""
    description: str = ""
    url: str
    method: HttpMethod = "POST"
    events: list[WebhookEventType] = Field(default_factory=list)
    secret: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    filters: Optional[WebhookFilters] = None
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    consecutive_failures: int = 0

    def subscribes_to(self, event_type: str) -> bool:
        return any(evt.value == event_type for evt in self.events)

    @classmethod
    def from_model(cls, wh):
        filters = _load_json(wh.filters, None)
        events = [e for e in _load_json(wh.events, []) if e in WebhookEventType._value2member_map_]
        return cls(
            id=wh.id,
            tenant_id=wh.tenant_id or "default",
            name=wh.name or "",
            description=wh.description or "",
            url=wh.url,
            method=wh.method or "POST",
            events=events,
            secret=wh.secret or None,
            headers=_load_json(wh.headers, {}),
            is_active=bool(wh.is_active),
            retry_config=RetryConfig(
                max_retries=wh.max_retries if wh.max_retries is not None else 3,
                retry_delay=wh.retry_delay_ms or 1000,
                backoff_multiplier=wh.backoff_multiplier or 2.0,
                timeout=wh.timeout_ms or 30000,
            ),
            filters=WebhookFilters(**filters) if filters else None,
            rate_limit=RateLimitConfig(
                enabled=bool(wh.rate_limit_enabled),
                max_requests_per_minute=wh.max_requests_per_minute or 60,
                max_requests_per_hour=wh.max_requests_per_hour or 1000,
            ),
            consecutive_failures=wh.consecutive_failures or 0,
        )


# ── Webhook CRUD ─────────────────────────────────────────
class WebhookCreate(BaseModel):
    tenant_id: str = "default"
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    url: str
    method: HttpMethod = "POST"
    events: list[WebhookEventType] = Field(..., min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    signed: bool = True  # False opts out of request signing
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    filters: Optional[WebhookFilters] = None
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    tags: list[str] = Field(default_factory=list)

    @field_validator("url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")) or len(v) <= len("https://"):
            raise ValueError("URL must be a valid HTTP/HTTPS URL")
        return v

    @field_validator("headers")
    @classmethod
    def _wire_headers(cls, v):
        return _check_headers(v)


class WebhookUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    url: Optional[str] = None
    method: Optional[HttpMethod] = None
    events: Optional[list[WebhookEventType]] = Field(None, min_length=1)
    headers: Optional[dict[str, str]] = None
    is_active: Optional[bool] = None
    retry_config: Optional[RetryConfig] = None
    filters: Optional[WebhookFilters] = None
    rate_limit: Optional[RateLimitConfig] = None
    tags: Optional[list[str]] = None

    @field_validator("url")
    @classmethod
    def _http_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("URL must be a valid HTTP/HTTPS URL")
        return v

    @field_validator("headers")
    @classmethod
    def _wire_headers(cls, v):
        return _check_headers(v)


class WebhookOut(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str
    url: str
    method: str
    events: list[str]
    headers: dict[str, str]
    secret: Optional[str] = None  # masked except when first issued
    is_active: bool
    is_verified: bool
    retry_config: RetryConfig
    filters: Optional[WebhookFilters] = None
    rate_limit: RateLimitConfig
    consecutive_failures: int
    is_healthy: bool
    health_status: str
    tags: list[str]
    last_triggered_at: Optional[datetime] = None
    disabled_at: Optional[datetime] = None
    disabled_reason: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, wh, health_status: str, secret: Optional[str] = None):
        config = WebhookConfig.from_model(wh)
        return cls(
            id=wh.id,
            tenant_id=config.tenant_id,
            name=config.name,
            description=config.description,
            url=config.url,
            method=config.method,
            events=[e.value for e in config.events],
            headers=config.headers,
            secret=secret,
            is_active=config.is_active,
            is_verified=bool(wh.is_verified),
            retry_config=config.retry_config,
            filters=config.filters,
            rate_limit=config.rate_limit,
            consecutive_failures=config.consecutive_failures,
            is_healthy=config.consecutive_failures == 0,
            health_status=health_status,
            tags=_load_json(wh.tags, []),
            last_triggered_at=wh.last_triggered_at,
            disabled_at=wh.disabled_at,
            disabled_reason=wh.disabled_reason,
            created_at=wh.created_at,
        )


# ── Delivery log ─────────────────────────────────────────
class AttemptRequestOut(BaseModel):
    url: str
    method: str
    headers: dict[str, str]
    timestamp: datetime


class AttemptResponseOut(BaseModel):
    status_code: int
    body: str
    response_time: int


class AttemptErrorOut(BaseModel):
    message: str
    type: str


class DeliveryAttemptOut(BaseModel):
    id: str
    attempt: int
    status: str
    success: bool
    request: AttemptRequestOut
    response: Optional[AttemptResponseOut] = None
    error: Optional[AttemptErrorOut] = None
    retry_delay_ms: Optional[int] = None
    created_at: datetime

    @classmethod
    def from_model(cls, row):
        return cls(
            id=row.id,
            attempt=row.attempt,
            status=row.status,
            success=bool(row.success),
            request=AttemptRequestOut(
                url=row.request_url or "",
                method=row.request_method or "POST",
                headers=_load_json(row.request_headers, {}),
                timestamp=row.created_at,
            ),
            response=AttemptResponseOut(
                status_code=row.response_status,
                body=row.response_body or "",
                response_time=row.response_time_ms or 0,
            ) if row.response_status is not None else None,
            error=AttemptErrorOut(
                message=row.error_message or "",
                type=row.error_type or "http_error",
            ) if row.error_type else None,
            retry_delay_ms=row.retry_delay_ms,
            created_at=row.created_at,
        )


class DeliveryLogOut(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    event_id: str
    status: str
    attempts: int
    max_attempts: int
    payload: dict
    last_error: str = ""
    next_retry_at: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    history: list[DeliveryAttemptOut] = Field(default_factory=list)

    @classmethod
    def from_model(cls, delivery, attempts=()):
        return cls(
            id=delivery.id,
            webhook_id=delivery.webhook_id,
            event_type=delivery.event_type,
            event_id=delivery.event_id,
            status=delivery.status,
            attempts=delivery.attempts or 0,
            max_attempts=delivery.max_attempts or 1,
            payload=_load_json(delivery.payload, {}),
            last_error=delivery.last_error or "",
            next_retry_at=delivery.next_retry_at,
            created_at=delivery.created_at,
            completed_at=delivery.completed_at,
            history=[DeliveryAttemptOut.from_model(a) for a in attempts],
        )


class DeliveryLogPage(BaseModel):
    items: list[DeliveryLogOut]
    total: int
    page: int
    limit: int


# ── Events ───────────────────────────────────────────────
class EventIn(BaseModel):
    """Producer-facing ingestion request; data shape is checked by the engine."""

    id: Optional[str] = None
    event: str
    data: dict
    tenant_id: Optional[str] = None
    timestamp: Optional[datetime] = None


class EventAccepted(BaseModel):
    event_id: str
    event: str
    accepted: bool = True


class WebhookTestResult(BaseModel):
    message: str
    delivery_id: str
    status: str
    success: bool
    response_status: Optional[int] = None
    duration_ms: int = 0


class SecretOut(BaseModel):
    webhook_id: str
    secret: str
    message: str


class VerificationOut(BaseModel):
    success: bool
    message: str
    challenge_verified: bool = False
    status_code: Optional[int] = None
