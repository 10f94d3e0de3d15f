"""Per-turn progress channel delivered over Server-Sent Events.

The orchestrator publishes lifecycle events (tool start/finish, text
chunks) through an emitter callback; a browser ``EventSource`` connected
to ``/agents/{id}/progress/{sessionId}`` reads them as SSE frames.  The
channel is advisory only: the POST response carries the real result, and
publishing to a session nobody is listening on is a silent no-op.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

logger = logging.getLogger(__name__)

ProgressEmitter = Callable[[str, dict[str, Any]], None]

# A turn's stream ends after one of these.
TERMINAL_EVENTS = frozenset({"text_complete", "text_error"})

KEEPALIVE_FRAME = ": keepalive\n\n"


def noop_emitter(event: str, payload: dict[str, Any]) -> None:
    return None


def format_sse(event: str, payload: dict[str, Any]) -> str:
    data = json.dumps(payload, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {data}\n\n"


class ProgressSession:
    """One open push connection.  Events are queued until the writer drains them."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.closed = False
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]] | None] = asyncio.Queue()

    def put(self, event: str, payload: dict[str, Any]) -> None:
        if self.closed:
            return
        self._queue.put_nowait((event, payload))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)

    async def frames(self, keepalive_seconds: float) -> AsyncIterator[str]:
        """Yield SSE frames until the session closes or the turn finishes."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=keepalive_seconds)
            except TimeoutError:
                yield KEEPALIVE_FRAME
                continue
            if item is None:
                return
            event, payload = item
            yield format_sse(event, payload)
            if event in TERMINAL_EVENTS:
                return


class ProgressChannel:
    """Registry of open progress sessions, keyed by session id.

    Owned by the application and injected wherever events are published;
    at most one live session exists per id.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ProgressSession] = {}

    def open(self, session_id: str) -> ProgressSession:
        previous = self._sessions.pop(session_id, None)
        if previous is not None:
            logger.info("Progress session %s reopened; closing previous connection", session_id)
            previous.close()
        session = ProgressSession(session_id)
        self._sessions[session_id] = session
        session.put("connected", {"sessionId": session_id})
        return session

    def publish(self, session_id: str, event: str, payload: dict[str, Any]) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.closed:
            return
        session.put(event, payload)

    def close(self, session_id: str, session: ProgressSession | None = None) -> None:
        """Close and forget a session.

        When ``session`` is given, only that exact connection is removed, so a
        stale writer cannot evict a newer connection for the same id.
        """
        current = self._sessions.get(session_id)
        if current is None:
            return
        if session is not None and current is not session:
            session.close()
            return
        del self._sessions[session_id]
        current.close()

    def is_open(self, session_id: str) -> bool:
        return session_id in self._sessions

    def emitter(self, session_id: str | None) -> ProgressEmitter:
        """Bind a session id into an emitter callback for the orchestrator."""
        if not session_id:
            return noop_emitter

        def emit(event: str, payload: dict[str, Any]) -> None:
            self.publish(session_id, event, payload)

        return emit
