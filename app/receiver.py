"""Test webhook receiver — records incoming webhooks for manual and automated checks."""

import asyncio
import json
import logging
import random
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from app.models import utcnow
from app.schemas.events import VERIFICATION_EVENT, format_timestamp
from app.services.signing import verify

logger = logging.getLogger(__name__)


def create_receiver_app(secret: Optional[str] = None, max_delay_ms: int = 100) -> FastAPI:
    """Build a receiver. With ``secret`` set, unsigned or mis-signed requests get 401."""
    app = FastAPI(title="VASA Webhook Test Receiver")
    app.state.received = []
    started = time.monotonic()

    @app.post("/webhook")
    async def receive(request: Request):
        body = await request.body()
        headers = dict(request.headers)
        timestamp = format_timestamp(utcnow())
        signature = headers.get("x-vasa-signature", "")

        signature_valid = None
        if secret is not None:
            signature_valid = verify(body, signature, secret)
            if not signature_valid:
                logger.warning("Rejected webhook with bad signature: %s", signature or "none")
                raise HTTPException(401, "Invalid signature")

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(400, "Body is not JSON")
        if not isinstance(payload, dict):
            raise HTTPException(400, "Body must be a JSON object")

        logger.info(
            "Webhook received: event=%s delivery=%s signature=%s",
            headers.get("x-vasa-event") or payload.get("event", "unknown"),
            headers.get("x-vasa-delivery", "unknown"),
            signature or "none",
        )
        app.state.received.append({
            "timestamp": timestamp,
            "headers": headers,
            "body": payload,
            "signature_valid": signature_valid,
        })

        if max_delay_ms:
            # simulate subscriber processing time
            await asyncio.sleep(random.random() * max_delay_ms / 1000)
        response = {"received": True, "timestamp": timestamp}
        # echo verification challenges so endpoint verification succeeds
        if payload.get("event") == VERIFICATION_EVENT:
            response["challenge"] = payload.get("data", {}).get("challenge")
        return response

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "webhooksReceived": len(app.state.received),
            "uptime": round(time.monotonic() - started, 3),
        }

    @app.get("/webhooks")
    async def list_received():
        return app.state.received

    @app.delete("/webhooks")
    async def clear_received():
        app.state.received.clear()
        return {"cleared": True}

    return app
