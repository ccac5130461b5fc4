"""Internal event ingestion for domain producers."""

from fastapi import APIRouter, Depends, HTTPException

from app.api.webhooks import get_engine
from app.exceptions import EventValidationError
from app.schemas import EventAccepted, EventIn

router = APIRouter(prefix="/events", tags=["events"])


@router.post("", response_model=EventAccepted, status_code=202)
async def ingest_event(data: EventIn, engine=Depends(get_engine)):
    """Accept an event for asynchronous delivery; the data must match the event type."""
    raw = {"event": data.event, "data": data.data}
    for key in ("id", "tenant_id", "timestamp"):
        if getattr(data, key) is not None:
            raw[key] = getattr(data, key)
    try:
        event = engine.emit(raw)
    except EventValidationError as exc:
        raise HTTPException(422, str(exc))
    return EventAccepted(event_id=event.id, event=event.event.value)
