"""Change notification API: recent events and the live NDJSON stream."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from kbsync import config
from kbsync.events.bus import init_frame, ping_frame, stream_frame

logger = logging.getLogger("kbsync.events")

events_router = APIRouter(prefix="/api/events", tags=["events"])


def _get_bus(request: Request):
    bus = getattr(request.app.state, "event_bus", None)
    if bus is None:
        raise HTTPException(status_code=503, detail="Event bus not initialized")
    return bus


@events_router.get("/recent")
async def recent_events(request: Request, limit: int = Query(100, ge=1, le=1000)):
    bus = _get_bus(request)
    return {
        "events": [event.to_wire() for event in bus.recent(limit)],
        "stats": bus.stats(),
    }


async def stream_frames(request: Request, bus, ping_seconds: float | None = None):
    """Yield the init frame, then one frame per event or AI content notice,
    with pings while idle.

    The subscription is registered before the snapshot is taken, so an event
    published in between can appear twice but is never missed.
    """
    interval = ping_seconds if ping_seconds is not None else config.STREAM_PING_SECONDS
    subscription = bus.subscribe()
    try:
        yield init_frame(bus.recent())
        while True:
            if await request.is_disconnected():
                break
            event = await subscription.get(timeout=interval)
            if event is not None:
                yield stream_frame(event)
            elif subscription.closed:
                break
            else:
                yield ping_frame()
    finally:
        subscription.close()
        logger.debug("Stream for %s closed", subscription.id)


@events_router.get("/stream")
async def stream_events(request: Request):
    bus = _get_bus(request)
    return StreamingResponse(
        stream_frames(request, bus),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
