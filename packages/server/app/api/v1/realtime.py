"""
Realtime change stream.

- GET /stream?table=notifications&filter=user_id=eq.<uuid>: SSE stream of
  committed row changes. Emits ``subscribed`` once, then one ``change`` event
  per matching insert, update or delete. Keep-alive comments are sent while
  the stream is idle.
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sse_starlette.sse import EventSourceResponse

from app.core.auth import get_current_actor
from app.core.config import get_settings
from app.core.realtime import change_stream, parse_channel_filter
from app.services.rest import get_model

router = APIRouter()


@router.get("/stream")
async def stream_changes(
    request: Request,
    table: str = Query(...),
    filter: Optional[str] = Query(None),
    actor_id: uuid.UUID = Depends(get_current_actor),
):
    get_model(table)
    channel_filter = parse_channel_filter(filter)
    return EventSourceResponse(
        change_stream(request, table, channel_filter, actor_id),
        ping=get_settings().realtime_heartbeat_seconds,
    )
