"""Webhook models — subscriptions, deliveries and the append-only attempt log."""

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from app.database import Base
from app.models import new_uuid, utcnow


class WebhookEndpoint(Base):
    """Registered webhook subscription for a tenant."""

    __tablename__ = "webhook_endpoints"

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(36), nullable=False, default="default", index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), default="")
    url = Column(String(2048), nullable=False)
    method = Column(String(10), default="POST")  # POST|PUT|PATCH
    events = Column(Text, default="[]")  # JSON list of subscribed event types
    secret = Column(String(200), nullable=True)  # HMAC signing secret, None = unsigned
    headers = Column(Text, default="{}")  # JSON map of static extra headers
    is_active = Column(Boolean, default=True)
    # Retry policy (milliseconds)
    max_retries = Column(Integer, default=3)
    retry_delay_ms = Column(Integer, default=1000)
    backoff_multiplier = Column(Float, default=2.0)
    timeout_ms = Column(Integer, default=30000)
    filters = Column(Text, nullable=True)  # JSON object, None = match everything
    # Caller-side rate limit
    rate_limit_enabled = Column(Boolean, default=False)
    max_requests_per_minute = Column(Integer, default=60)
    max_requests_per_hour = Column(Integer, default=1000)
    # Health: updated in the same transaction as each attempt log row
    consecutive_failures = Column(Integer, default=0)
    is_verified = Column(Boolean, default=False)
    verified_at = Column(DateTime, nullable=True)
    last_triggered_at = Column(DateTime, nullable=True)
    disabled_at = Column(DateTime, nullable=True)
    disabled_reason = Column(String(200), nullable=True)
    tags = Column(Text, default="[]")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WebhookDelivery(Base):
    """One (event, subscription) delivery; the durable retry queue keyed by next_retry_at."""

    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True)  # delivery_id, stable across retries
    webhook_id = Column(String(36), nullable=False, index=True)
    event_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    status = Column(String(20), default="pending", index=True)  # pending|retry|success|abandoned|cancelled
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=1)
    attempt_offset = Column(Integer, default=0)  # attempts made before the latest replay
    payload = Column(Text, nullable=False)  # exact bytes sent on the wire
    next_retry_at = Column(DateTime, nullable=True, index=True)
    last_error = Column(Text, default="")
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)


class WebhookDeliveryAttempt(Base):
    """Log of individual HTTP delivery attempts. Never updated once written."""

    __tablename__ = "webhook_delivery_attempts"

    id = Column(String(36), primary_key=True, default=new_uuid)
    delivery_id = Column(String(36), nullable=False, index=True)
    webhook_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    attempt = Column(Integer, default=1)
    status = Column(String(20), nullable=False)  # delivery status after this attempt
    success = Column(Boolean, default=False)
    request_url = Column(String(2048), default="")
    request_method = Column(String(10), default="POST")
    request_headers = Column(Text, default="{}")
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, default="")
    response_time_ms = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    error_type = Column(String(30), nullable=True)
    retry_delay_ms = Column(Integer, nullable=True)  # delay scheduled after this attempt
    created_at = Column(DateTime, default=utcnow, index=True)
