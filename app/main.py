"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import events, webhooks
from app.config import get_settings
from app.database import async_session, create_tables
from app.services.webhook_engine import WebhookEngine

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    engine = WebhookEngine.from_session_factory(async_session)
    app.state.engine = engine
    await engine.start()
    yield
    await engine.stop()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Outbound webhook delivery for the VASA trade marketplace",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(webhooks.router, prefix="/api/v1")
app.include_router(events.router, prefix="/api/v1")


@app.get("/health")
async def health():
    engine = getattr(app.state, "engine", None)
    return {
        "status": "ok",
        "app": settings.app_name,
        "engine_running": bool(engine and engine.running),
    }
