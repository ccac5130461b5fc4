"""Performs single HTTP delivery attempts and classifies their outcome."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

from app.config import Settings, get_settings
from app.schemas import WebhookConfig
from app.services.retry import parse_retry_after
from app.services.signing import SIGNATURE_ALGORITHM, sign

logger = logging.getLogger(__name__)

# Custom subscription headers never replace these
_RESERVED_HEADERS = {"content-type", "user-agent"}
_RESERVED_PREFIX = "x-vasa-"


class ErrorType:
    TIMEOUT = "timeout"
    CONNECTION = "connection_error"
    HTTP = "http_error"
    RATE_LIMIT = "rate_limit_error"
    SERVER = "server_error"
    CLIENT = "client_error"


@dataclass
class AttemptOutcome:
    success: bool
    request_url: str
    request_method: str
    request_headers: dict[str, str] = field(default_factory=dict)
    status_code: Optional[int] = None
    response_body: str = ""
    response_time_ms: int = 0
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    retry_after: Optional[float] = None  # seconds, only from a 429


def classify_status(status_code: int) -> Optional[str]:
    if 200 <= status_code < 300:
        return None
    if status_code == 429:
        return ErrorType.RATE_LIMIT
    if status_code >= 500:
        return ErrorType.SERVER
    if status_code >= 400:
        return ErrorType.CLIENT
    return ErrorType.HTTP


def build_headers(config: WebhookConfig, delivery, settings: Optional[Settings] = None) -> dict[str, str]:
    settings = settings or get_settings()
    headers = {
        k: v for k, v in config.headers.items()
        if k.lower() not in _RESERVED_HEADERS and not k.lower().startswith(_RESERVED_PREFIX)
    }
    headers.update({
        "Content-Type": "application/json",
        "User-Agent": settings.webhook_user_agent,
        "X-VASA-Event": delivery.event_type,
        "X-VASA-Delivery": delivery.id,
        "X-VASA-Webhook": config.id,
    })
    if config.secret:
        headers["X-VASA-Signature"] = sign(delivery.payload.encode("utf-8"), config.secret)
        headers["X-VASA-Signature-Algorithm"] = SIGNATURE_ALGORITHM
    return headers


class DeliveryWorker:
    """Sends one request per call. Never raises for a failed delivery."""

    def __init__(self, client: httpx.AsyncClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or get_settings()

    async def deliver(self, config: WebhookConfig, delivery) -> AttemptOutcome:
        headers = build_headers(config, delivery, self.settings)
        outcome = AttemptOutcome(
            success=False,
            request_url=config.url,
            request_method=config.method,
            request_headers=headers,
        )
        limit = self.settings.webhook_response_body_limit
        timeout = config.retry_config.timeout / 1000

        start = time.monotonic()
        try:
            # httpx timeouts are per phase; wait_for bounds the whole exchange
            resp = await asyncio.wait_for(
                self.client.request(
                    config.method,
                    config.url,
                    content=delivery.payload.encode("utf-8"),
                    headers=headers,
                    timeout=timeout,
                ),
                timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            outcome.error_type = ErrorType.TIMEOUT
            outcome.error_message = f"Request timed out after {config.retry_config.timeout}ms: {exc!r}"
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            outcome.error_type = ErrorType.CONNECTION
            outcome.error_message = str(exc) or exc.__class__.__name__
        except Exception as exc:
            # request could not be built, e.g. a header value httpx cannot encode
            outcome.error_type = ErrorType.CLIENT
            outcome.error_message = f"Request could not be sent: {exc!r}"
        else:
            outcome.status_code = resp.status_code
            outcome.response_body = resp.text[:limit]
            outcome.error_type = classify_status(resp.status_code)
            outcome.success = outcome.error_type is None
            if not outcome.success:
                outcome.error_message = f"HTTP {resp.status_code}: {resp.reason_phrase}"
            if resp.status_code == 429:
                outcome.retry_after = parse_retry_after(resp.headers.get("Retry-After"))
        outcome.response_time_ms = int((time.monotonic() - start) * 1000)

        if outcome.success:
            logger.info("Delivered %s to %s (%s) in %dms",
                        delivery.id, config.url, outcome.status_code, outcome.response_time_ms)
        else:
            logger.warning("Delivery %s to %s failed: %s", delivery.id, config.url, outcome.error_message)
        return outcome
