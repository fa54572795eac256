"""
In-memory table of live trade sessions.

WHAT: Sessions keyed by id, each with its own asyncio lock
WHY: Commands for one session must be serialized; unrelated sessions must not be
HOW: Dict of sessions + dict of locks; `locked()` re-checks presence after acquiring
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional

from ..models.live_trade import LiveTradeSession
from ..utils.exceptions import SessionNotFoundException
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SessionTable:
    """
    Owned by the negotiation engine; nothing else writes to it.

    Lives on one event loop. Inserts, lookups and deletes don't await, so they
    are atomic with respect to other coroutines.
    """

    def __init__(self):
        self._sessions: Dict[str, LiveTradeSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def add(self, session: LiveTradeSession):
        self._sessions[session.id] = session
        self._locks[session.id] = asyncio.Lock()
        logger.debug(f"Session {session.id} added ({len(self._sessions)} active)")

    def get(self, session_id: str) -> Optional[LiveTradeSession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[LiveTradeSession]:
        self._locks.pop(session_id, None)
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.debug(f"Session {session_id} removed ({len(self._sessions)} active)")
        return session

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[LiveTradeSession]:
        """
        Hold the session's lock for the duration of the block.

        Raises:
            SessionNotFoundException: unknown id, or the session was removed
                while this caller waited for the lock
        """
        lock = self._locks.get(session_id)
        if lock is None:
            raise SessionNotFoundException(session_id)

        async with lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundException(session_id)
            yield session

    def sessions_for_user(self, user_id: int) -> List[LiveTradeSession]:
        return [s for s in self._sessions.values() if s.is_participant(user_id)]

    def stale_sessions(
        self,
        pending_ttl: timedelta,
        active_ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> List[str]:
        """
        Ids of sessions older than their status TTL.

        Args:
            pending_ttl: Max age of an unanswered invite
            active_ttl: Max age of a negotiation; None disables
            now: Reference time (defaults to utcnow)
        """
        now = now or datetime.utcnow()
        return [
            session_id for session_id, session in self._sessions.items()
            if is_stale(session, pending_ttl, active_ttl, now)
        ]

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for session in self._sessions.values():
            counts[session.status] = counts.get(session.status, 0) + 1
        return counts


def is_stale(
    session: LiveTradeSession,
    pending_ttl: timedelta,
    active_ttl: Optional[timedelta],
    now: datetime
) -> bool:
    """Pending sessions age from the invite, active ones from acceptance."""
    if session.status == "pending":
        return now - session.created_at > pending_ttl
    if session.status == "active" and active_ttl is not None:
        return now - (session.accepted_at or session.created_at) > active_ttl
    return False
