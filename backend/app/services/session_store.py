"""Key-value session storage.

Sessions are stored as JSON-compatible dicts keyed by session id. Every
backend offers the same atomic get/set/destroy operations so the session
manager never touches global state directly.
"""
from abc import ABC, abstractmethod
import copy
from datetime import datetime
import json
import logging
import threading

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.auth import StoredSession
from app.services import clock
from app.services.errors import SessionStoreError

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Abstract session storage."""

    @abstractmethod
    def get(self, sid: str) -> dict | None:
        """Return the stored payload, or None if missing or expired."""

    @abstractmethod
    def set(self, sid: str, data: dict, expires_at: datetime) -> None:
        """Create or replace the payload and push its expiry forward."""

    @abstractmethod
    def destroy(self, sid: str) -> None:
        """Remove the session. Unknown ids are ignored."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete expired sessions and return how many were removed."""


class DatabaseSessionStore(SessionStore):
    """Session storage backed by the ``user_sessions`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, sid: str) -> dict | None:
        try:
            record = self.db.get(StoredSession, sid)
        except SQLAlchemyError as exc:
            raise SessionStoreError("Failed to load session") from exc
        if record is None:
            return None

        expires_at = clock.parse_timestamp(record.expires_at)
        if expires_at is None or expires_at <= clock.utcnow():
            return None

        try:
            data = json.loads(record.data)
        except ValueError:
            logger.warning(f"Discarding session with malformed payload: {sid[:8]}")
            return None
        return data if isinstance(data, dict) else None

    def set(self, sid: str, data: dict, expires_at: datetime) -> None:
        payload = json.dumps(data, separators=(",", ":"))
        try:
            record = self.db.get(StoredSession, sid)
            if record is None:
                record = StoredSession(sid=sid)
                self.db.add(record)
            record.data = payload
            record.expires_at = expires_at.isoformat()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SessionStoreError("Failed to save session") from exc

    def destroy(self, sid: str) -> None:
        try:
            self.db.query(StoredSession).filter(StoredSession.sid == sid).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SessionStoreError("Failed to destroy session") from exc

    def purge_expired(self) -> int:
        now = clock.utcnow().isoformat()
        try:
            removed = self.db.query(StoredSession).filter(
                StoredSession.expires_at <= now,
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SessionStoreError("Failed to purge sessions") from exc
        logger.debug(f"Purged {removed} expired sessions")
        return removed


class MemorySessionStore(SessionStore):
    """Process-local session storage for development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, tuple[dict, datetime]] = {}

    def get(self, sid: str) -> dict | None:
        with self._lock:
            entry = self._sessions.get(sid)
            if entry is None:
                return None
            data, expires_at = entry
            if expires_at <= clock.utcnow():
                del self._sessions[sid]
                return None
            return copy.deepcopy(data)

    def set(self, sid: str, data: dict, expires_at: datetime) -> None:
        with self._lock:
            self._sessions[sid] = (copy.deepcopy(data), expires_at)

    def destroy(self, sid: str) -> None:
        with self._lock:
            self._sessions.pop(sid, None)

    def purge_expired(self) -> int:
        now = clock.utcnow()
        with self._lock:
            expired = [sid for sid, (_, expires_at) in self._sessions.items() if expires_at <= now]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
