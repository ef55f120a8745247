"""API router for notices sent to connected clients."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from kbsync.models import AIContentEvent

notifications_router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@notifications_router.post("/ai-content")
async def ai_content_created(request: Request, body: AIContentEvent):
    """Tell live clients that an agent wrote content worth reviewing.

    Not for diary entries, memory updates or other routine writes.
    """
    emitter = getattr(request.app.state, "emitter", None)
    if emitter is None:
        raise HTTPException(status_code=503, detail="Event emitter not initialized")
    event = emitter.notify_ai_content(body.contentType, body.title, body.filePath, body.message)
    return {
        "success": True,
        "notified": event is not None,
        "contentType": body.contentType,
        "title": body.title,
        "filePath": body.filePath,
    }
