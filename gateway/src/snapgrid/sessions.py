from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Callable, Dict

from .clock import _now_ms
from .identity import UserId
from .sqlite_backend import SQLiteBackend

DEFAULT_TTL_MS = 14 * 24 * 60 * 60 * 1000


@dataclass
class Session:
    user_id: UserId
    session_token: str
    expires_at_ms: int


def _new_token() -> str:
    return f"st_{secrets.token_urlsafe(16)}"


class SessionStore:
    """In-memory session tokens resolving to user identities."""

    def __init__(self, ttl_ms: int = DEFAULT_TTL_MS, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._by_token: Dict[str, Session] = {}

    def create(self, user_id: UserId | str) -> Session:
        session = Session(
            user_id=UserId.of(user_id),
            session_token=_new_token(),
            expires_at_ms=self._now() + self._ttl_ms,
        )
        self._by_token[session.session_token] = session
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        session = self._by_token.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_token.pop(session.session_token, None)


class SQLiteSessionStore:
    """Durable session store backed by SQLite."""

    def __init__(
        self,
        backend: SQLiteBackend,
        ttl_ms: int = DEFAULT_TTL_MS,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._ttl_ms = ttl_ms
        self._now = now_func

    def create(self, user_id: UserId | str) -> Session:
        session = Session(
            user_id=UserId.of(user_id),
            session_token=_new_token(),
            expires_at_ms=self._now() + self._ttl_ms,
        )
        with self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO sessions (session_token, user_id, expires_at_ms) VALUES (?, ?, ?)",
                (session.session_token, str(session.user_id), session.expires_at_ms),
            )
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT session_token, user_id, expires_at_ms FROM sessions WHERE session_token=?",
                (session_token,),
            ).fetchone()
        if row is None:
            return None
        session = Session(session_token=row[0], user_id=UserId(row[1]), expires_at_ms=row[2])
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "DELETE FROM sessions WHERE session_token=?",
                (session.session_token,),
            )
