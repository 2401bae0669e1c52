"""In-memory registry of backend sessions for signed-in browsers."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .backend import BackendSession


@dataclass
class _SessionRecord:
    session: BackendSession
    token_expires_at: datetime
    expires_at: datetime


class SessionManager:
    """Map opaque cookie tokens to backend sessions.

    A record lives for ``max_ttl`` from sign-in. The backend access token it
    carries usually expires sooner; callers check :meth:`needs_refresh` and
    hand the renewed session back through :meth:`update`.
    """

    def __init__(
        self,
        *,
        max_ttl: timedelta = timedelta(hours=8),
        refresh_leeway: timedelta = timedelta(minutes=1),
    ) -> None:
        self._max_ttl = max_ttl
        self._refresh_leeway = refresh_leeway
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = threading.Lock()

    @property
    def max_ttl(self) -> timedelta:
        return self._max_ttl

    def create(self, session: BackendSession) -> str:
        token = secrets.token_urlsafe(32)
        now = self._now()
        record = _SessionRecord(
            session=session,
            token_expires_at=self._token_deadline(session, now),
            expires_at=now + self._max_ttl,
        )
        with self._lock:
            self._purge_expired()
            self._sessions[token] = record
        return token

    def resolve(self, token: str) -> Optional[BackendSession]:
        record = self._live_record(token)
        return record.session if record is not None else None

    def needs_refresh(self, token: str) -> bool:
        """``True`` once the access token is within the leeway of expiring."""

        record = self._live_record(token)
        if record is None:
            return False
        return record.token_expires_at - self._refresh_leeway <= self._now()

    def update(self, token: str, session: BackendSession) -> bool:
        """Swap in a renewed backend session, keeping the record's lifetime."""

        now = self._now()
        with self._lock:
            record = self._sessions.get(token)
            if record is None or record.expires_at <= now:
                return False
            record.session = session
            record.token_expires_at = self._token_deadline(session, now)
        return True

    def destroy(self, token: str) -> Optional[BackendSession]:
        with self._lock:
            record = self._sessions.pop(token, None)
        return record.session if record is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _live_record(self, token: str) -> Optional[_SessionRecord]:
        now = self._now()
        with self._lock:
            record = self._sessions.get(token)
            if record is not None and record.expires_at <= now:
                del self._sessions[token]
                return None
            return record

    @staticmethod
    def _token_deadline(session: BackendSession, now: datetime) -> datetime:
        return now + timedelta(seconds=max(session.expires_in, 0))

    def _purge_expired(self) -> None:
        now = self._now()
        for token in [key for key, record in self._sessions.items() if record.expires_at <= now]:
            del self._sessions[token]

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["SessionManager"]
