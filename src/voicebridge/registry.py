"""
Registry of live call sessions.

The only state shared across calls. Every mutation happens under one
asyncio.Lock; session teardown runs outside it.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from src.voicebridge.session import CallSession

logger = structlog.get_logger(__name__)


def new_call_id() -> str:
    """Opaque, process-unique call identifier."""
    return f"call_{uuid.uuid4().hex[:8]}"


class SessionRegistry:
    """Maps call ids to live `CallSession`s."""

    def __init__(self, session_factory: Callable[..., CallSession] = CallSession):
        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()
        self._session_factory = session_factory
        self.total_created = 0

    async def create(
        self,
        send_message: Callable[[str], Awaitable[None]],
        call_id: Optional[str] = None,
        **kwargs: Any,
    ) -> CallSession:
        """Create and register a session for a newly accepted connection."""
        async with self._lock:
            call_id = call_id or new_call_id()
            while call_id in self._sessions:
                call_id = new_call_id()
            session = self._session_factory(
                call_id,
                send_message,
                on_closed=self.discard,
                **kwargs,
            )
            self._sessions[call_id] = session
            self.total_created += 1

        logger.info("Session registered", call_id=call_id, active_sessions=len(self._sessions))
        return session

    def get(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    async def discard(self, call_id: str) -> None:
        """Forget a session without closing it (called after it closed itself)."""
        async with self._lock:
            removed = self._sessions.pop(call_id, None)
        if removed is not None:
            logger.info("Session released", call_id=call_id, active_sessions=len(self._sessions))

    async def destroy(self, call_id: str, reason: str = "transport_closed") -> None:
        """Close and forget a session. Unknown ids are ignored."""
        async with self._lock:
            session = self._sessions.pop(call_id, None)
        if session is None:
            return
        await session.close(reason=reason)
        logger.info("Session destroyed", call_id=call_id, reason=reason, active_sessions=len(self._sessions))

    async def close_all(self) -> None:
        """Close every live session (server shutdown)."""
        async with self._lock:
            sessions: List[CallSession] = list(self._sessions.values())
            self._sessions.clear()
        if not sessions:
            return
        logger.info("Closing all sessions", count=len(sessions))
        results = await asyncio.gather(
            *(session.close(reason="shutdown") for session in sessions),
            return_exceptions=True,
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning("Session close failed", call_id=session.call_id, error=str(result))

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions
