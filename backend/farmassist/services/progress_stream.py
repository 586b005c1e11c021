"""
Progress Stream Hub - per-session push channels for real-time step reporting

Clients open one Server-Sent Events stream per chat session. The orchestration
engine emits progress events for that session while it works; events for a
session without an open stream are dropped (at-most-once, no replay).
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from farmassist.core.config import settings
from farmassist.schemas.chat import ProgressEvent

logger = logging.getLogger(__name__)


class StreamWriteError(Exception):
    """Raised when an event cannot be written to a client channel"""
    pass


def encode_sse(event: ProgressEvent) -> str:
    """Encode an event as one Server-Sent Events frame"""
    return f"data: {json.dumps(event.to_wire(), default=str)}\n\n"


class ProgressChannel:
    """Base class for a client-facing output channel."""

    async def send(self, frame: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class QueueProgressChannel(ProgressChannel):
    """
    Channel backed by an asyncio.Queue.

    The SSE endpoint drains the queue into a StreamingResponse; a closed or
    overflowing channel raises StreamWriteError so the hub drops it.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: str) -> None:
        if self._closed:
            raise StreamWriteError("Channel is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull as e:
            raise StreamWriteError("Client is not reading the progress stream") from e

    async def get(self) -> Optional[str]:
        """Next frame, or None once the channel has been closed"""
        frame = await self._queue.get()
        return frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader is gone or far behind; it will see `closed` on its next check
            pass


class _Registration:
    __slots__ = ("channel", "heartbeat")

    def __init__(self, channel: ProgressChannel):
        self.channel = channel
        self.heartbeat: Optional[asyncio.Task] = None


class ProgressStreamHub:
    """
    Registry of live progress channels, one per session.

    register/unregister are serialized by a lock. When two registrations race
    for the same session the later one wins and the earlier channel is
    closed; a failure on a replaced channel never evicts its successor.

    Usage:
        hub = ProgressStreamHub()
        await hub.register(session_id, channel)
        await hub.send_progress(session_id, "calling_tools", "Fetching your fields")
        await hub.unregister(session_id, channel)
    """

    def __init__(self, heartbeat_interval: Optional[float] = None):
        self.heartbeat_interval = heartbeat_interval or settings.PROGRESS_HEARTBEAT_SECONDS
        self._registrations: Dict[str, _Registration] = {}
        self._lock = asyncio.Lock()

    async def register(self, session_id: str, channel: ProgressChannel) -> None:
        """Attach `channel` to a session, send the connection event and start heartbeats."""
        async with self._lock:
            previous = self._registrations.pop(session_id, None)
            registration = _Registration(channel)
            self._registrations[session_id] = registration

        if previous is not None:
            logger.info(f"Replacing progress channel for session {session_id}")
            await self._dispose(previous)

        logger.info(f"Progress stream connected for session {session_id}")
        delivered = await self._write(
            session_id,
            channel,
            ProgressEvent(
                session_id=session_id,
                type="connection",
                payload={"message": "Progress stream connected"}
            )
        )
        if delivered and self._registrations.get(session_id) is registration:
            registration.heartbeat = asyncio.create_task(self._heartbeat(session_id, channel))

    async def unregister(self, session_id: str, channel: Optional[ProgressChannel] = None) -> bool:
        """
        Detach a session's channel.

        With `channel` given, only that exact channel is removed, so a stale
        connection cannot unregister a newer one.

        Returns:
            True if a registration was removed
        """
        async with self._lock:
            registration = self._registrations.get(session_id)
            if registration is None:
                return False
            if channel is not None and registration.channel is not channel:
                return False
            del self._registrations[session_id]

        await self._dispose(registration)
        logger.info(f"Progress stream disconnected for session {session_id}")
        return True

    async def emit(self, session_id: str, event: ProgressEvent) -> bool:
        """
        Write an event to the session's channel if one is registered.

        Never raises. Returns True when the event was written.
        """
        registration = self._registrations.get(session_id)
        if registration is None:
            logger.debug(f"No progress stream for session {session_id}, dropping {event.type} event")
            return False
        return await self._write(session_id, registration.channel, event)

    async def send_progress(self, session_id: str, step: str, message: str, **extra: Any) -> bool:
        """Emit a `progress` event with a step label and message"""
        return await self.emit(
            session_id,
            ProgressEvent(
                session_id=session_id,
                type="progress",
                payload={"step": step, "message": message, **extra}
            )
        )

    def active_sessions(self) -> List[str]:
        return list(self._registrations)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._registrations

    async def close(self) -> None:
        """Unregister every channel (application shutdown)"""
        async with self._lock:
            registrations = list(self._registrations.values())
            self._registrations.clear()
        for registration in registrations:
            await self._dispose(registration)

    async def _write(self, session_id: str, channel: ProgressChannel, event: ProgressEvent) -> bool:
        try:
            await channel.send(encode_sse(event))
            return True
        except StreamWriteError as e:
            logger.warning(f"Progress stream write failed for session {session_id}: {e}")
        except Exception as e:
            logger.warning(
                f"Progress channel for session {session_id} raised {type(e).__name__}: {e}",
                exc_info=True
            )
        await self.unregister(session_id, channel)
        return False

    async def _heartbeat(self, session_id: str, channel: ProgressChannel) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            delivered = await self._write(
                session_id,
                channel,
                ProgressEvent(session_id=session_id, type="heartbeat")
            )
            if not delivered:
                return

    async def _dispose(self, registration: _Registration) -> None:
        task = registration.heartbeat
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        await registration.channel.close()
