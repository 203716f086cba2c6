from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .errors import SessionCollision

if TYPE_CHECKING:
    from .pty import PtySession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Live sessions keyed by id, shared by every connection.

    Mutations go through a single lock; lookups are plain dictionary reads
    on the event-loop thread and never wait on it.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, PtySession] = {}
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def register(self, session_id: str, session: PtySession) -> None:
        async with self._get_lock():
            if session_id in self._sessions:
                raise SessionCollision(session_id)
            self._sessions[session_id] = session
        logger.debug("Registered session %s (%d live)", session_id, len(self._sessions))

    def lookup(self, session_id: str) -> Optional[PtySession]:
        return self._sessions.get(session_id)

    async def remove(self, session_id: str) -> bool:
        async with self._get_lock():
            existed = self._sessions.pop(session_id, None) is not None
        if existed:
            logger.debug("Removed session %s (%d live)", session_id, len(self._sessions))
        return existed

    def ids(self) -> List[str]:
        return list(self._sessions)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [s.to_payload() for s in list(self._sessions.values())]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
