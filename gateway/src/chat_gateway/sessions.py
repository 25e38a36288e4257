from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Dict, List


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    session_id: str
    user_id: str
    started_at_ms: int


class SessionStore:
    """Tracks live push-channel sessions; a user may hold several (tabs)."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def create(self, user_id: str) -> Session:
        session = Session(
            session_id=f"ps_{secrets.token_urlsafe(12)}",
            user_id=user_id,
            started_at_ms=_now_ms(),
        )
        self._sessions[session.session_id] = session
        return session

    def close(self, session: Session) -> None:
        self._sessions.pop(session.session_id, None)

    def active_for(self, user_id: str) -> List[Session]:
        return [session for session in self._sessions.values() if session.user_id == user_id]

    def __len__(self) -> int:
        return len(self._sessions)
