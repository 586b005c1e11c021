import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from farmassist.api.deps import get_progress_hub
from farmassist.core.rate_limiter import RateLimits, limiter
from farmassist.services.progress_stream import ProgressStreamHub, QueueProgressChannel

logger = logging.getLogger(__name__)

router = APIRouter()

# How often the stream checks whether the client went away while idle
DISCONNECT_POLL_SECONDS = 1.0


@router.get("/progress")
@limiter.limit(RateLimits.PROGRESS_STREAM)
async def stream_progress(
    request: Request,
    session_id: str = Query(..., alias="sessionId", min_length=1),
    progress_hub: ProgressStreamHub = Depends(get_progress_hub),
) -> StreamingResponse:
    """
    Server-Sent Events stream of progress updates for one chat session.

    Emits a `connection` event on open, a `heartbeat` on a fixed interval and
    `progress` events while a completion for the session is running.
    """
    channel = QueueProgressChannel()
    await progress_hub.register(session_id, channel)

    async def event_generator() -> AsyncIterator[str]:
        try:
            while True:
                if await request.is_disconnected():
                    logger.info(f"Progress client disconnected for session {session_id}")
                    break
                try:
                    frame = await asyncio.wait_for(channel.get(), timeout=DISCONNECT_POLL_SECONDS)
                except asyncio.TimeoutError:
                    if channel.closed:
                        break
                    continue
                if frame is None:
                    break
                yield frame
        finally:
            await progress_hub.unregister(session_id, channel)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
