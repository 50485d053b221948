"""
In-process registry of live conversation sessions.
Sessions live only as long as the process; nothing is persisted.
"""

import asyncio
from typing import Dict, List, Optional
import structlog

from orchestrator.session import ConversationSession

logger = structlog.get_logger()


class SessionStore:
    def __init__(self):
        self._sessions: Dict[str, ConversationSession] = {}
        self._bridges: Dict[str, asyncio.Task] = {}

    def add(self, session: ConversationSession) -> None:
        self._sessions[session.session_id] = session
        logger.info("session_registered", session_id=session.session_id, total=len(self._sessions))

    def get(self, session_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(session_id)

    def lock_for(self, session_id: str) -> asyncio.Lock:
        """Events and continuations of one session run one at a time."""
        return self._sessions[session_id].lock

    def attach_bridge(self, session_id: str, task: asyncio.Task) -> None:
        self._bridges[session_id] = task
        task.add_done_callback(lambda _t: self._bridges.pop(session_id, None))

    def has_bridge(self, session_id: str) -> bool:
        return session_id in self._bridges

    def remove(self, session_id: str) -> Optional[ConversationSession]:
        session = self._sessions.pop(session_id, None)
        bridge = self._bridges.pop(session_id, None)
        if bridge is not None:
            bridge.cancel()
        if session is not None:
            session.close()
        return session

    def list_ids(self) -> List[str]:
        return list(self._sessions)

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.remove(session_id)


_session_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _session_store
    if _session_store is None:
        _session_store = SessionStore()
    return _session_store
