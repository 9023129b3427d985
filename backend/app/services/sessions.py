"""Server-side session lifecycle.

A session moves through ``ANONYMOUS -> LOGIN_PENDING -> AUTHENTICATED`` and
ends when it is destroyed (logout, or an expired access token found by a
status check). The browser only ever holds a signed session id; everything
else lives in the injected :class:`SessionStore`.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import enum
import hmac
import logging
import secrets

from fastapi import Request, Response
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from app.config import Settings
from app.services import clock
from app.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    LOGIN_PENDING = "login_pending"
    AUTHENTICATED = "authenticated"
    DESTROYED = "destroyed"


class OAuthState(BaseModel):
    """Single-use OAuth ``state`` nonce and its expiry."""

    model_config = ConfigDict(frozen=True)

    nonce: str
    expires_at: datetime

    @classmethod
    def issue(cls, nbytes: int, ttl_seconds: int) -> "OAuthState":
        return cls(
            nonce=secrets.token_hex(nbytes),
            expires_at=clock.utcnow() + timedelta(seconds=ttl_seconds),
        )

    def matches(self, candidate: str | None) -> bool:
        """Constant-time comparison against the value echoed by the provider."""
        if not candidate:
            return False
        return hmac.compare_digest(self.nonce.encode("utf-8"), candidate.encode("utf-8"))

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or clock.utcnow()) > self.expires_at


class SessionData(BaseModel):
    """Payload persisted for one session id."""

    user_id: str | None = None
    spotify_id: str | None = None
    audit_id: str | None = None
    csrf_token: str | None = None
    csrf_rotated_at: datetime | None = None
    session_start: datetime | None = None
    login_attempt_at: datetime | None = None
    oauth_state: OAuthState | None = None
    token_expires_at: datetime | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


@dataclass
class ServerSession:
    """A loaded session bound to its id."""

    sid: str
    data: SessionData
    persisted: bool = False
    destroyed: bool = False

    @property
    def state(self) -> SessionState:
        if self.destroyed:
            return SessionState.DESTROYED
        if self.data.is_authenticated:
            return SessionState.AUTHENTICATED
        if self.data.oauth_state is not None:
            return SessionState.LOGIN_PENDING
        return SessionState.ANONYMOUS


def constant_time_equals(expected: str | None, supplied: str | None) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


class SessionManager:
    """Loads, saves, regenerates and destroys sessions, and owns the cookie."""

    cookie_type = "session"

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    # Identifiers and tokens

    @staticmethod
    def new_session_id() -> str:
        return secrets.token_urlsafe(32)

    def new_csrf_token(self) -> str:
        return secrets.token_hex(self.settings.csrf_nbytes)

    def encode_cookie(self, sid: str) -> str:
        return jwt.encode(
            {"sid": sid, "type": self.cookie_type},
            self.settings.secret_key,
            algorithm=self.settings.algorithm,
        )

    def decode_cookie(self, value: str | None) -> str | None:
        if not value:
            return None
        try:
            payload = jwt.decode(value, self.settings.secret_key, algorithms=[self.settings.algorithm])
        except JWTError:
            logger.warning("Rejected session cookie with invalid signature")
            return None
        if payload.get("type") != self.cookie_type:
            return None
        sid = payload.get("sid")
        return sid if isinstance(sid, str) and sid else None

    # Lifecycle

    def load(self, request: Request) -> ServerSession:
        """Return the caller's session, or a fresh unsaved anonymous one."""
        sid = self.decode_cookie(request.cookies.get(self.settings.session_cookie_name))
        if sid:
            raw = self.store.get(sid)
            if raw is not None:
                try:
                    data = SessionData.model_validate(raw)
                except PydanticValidationError:
                    logger.warning(f"Discarding session with invalid payload: {sid[:8]}")
                else:
                    return ServerSession(sid=sid, data=data, persisted=True)
        return ServerSession(sid=self.new_session_id(), data=SessionData())

    def save(self, session: ServerSession) -> None:
        """Persist the session and slide its expiry forward."""
        expires_at = clock.utcnow() + timedelta(seconds=self.settings.session_ttl_seconds)
        self.store.set(session.sid, session.data.model_dump(mode="json"), expires_at)
        session.persisted = True

    def regenerate(self, session: ServerSession, sid: str | None = None) -> ServerSession:
        """Discard the old session id and hand out a new, empty session.

        ``sid`` lets the caller allocate the new id up front, so records
        written before the switch can already point at it.
        """
        if session.persisted:
            self.store.destroy(session.sid)
        session.destroyed = True
        return ServerSession(sid=sid or self.new_session_id(), data=SessionData())

    def destroy(self, session: ServerSession) -> None:
        if session.persisted:
            self.store.destroy(session.sid)
        session.data = SessionData()
        session.persisted = False
        session.destroyed = True

    # CSRF

    def issue_csrf(self, session: ServerSession, now: datetime | None = None) -> str:
        token = self.new_csrf_token()
        session.data.csrf_token = token
        session.data.csrf_rotated_at = now or clock.utcnow()
        return token

    def rotate_csrf_if_due(self, session: ServerSession, now: datetime | None = None) -> bool:
        """Replace the CSRF token once the rotation interval has elapsed."""
        now = now or clock.utcnow()
        rotated_at = session.data.csrf_rotated_at
        interval = timedelta(seconds=self.settings.csrf_rotation_seconds)
        if rotated_at is not None and now - rotated_at <= interval and session.data.csrf_token:
            return False
        self.issue_csrf(session, now)
        return True

    # Token expiry mirror

    def token_mirror_valid(self, session: ServerSession, stored_expires_at: datetime | None) -> bool:
        """Re-validate the mirrored access-token expiry against the token store.

        A mirror in the past is never trusted: it is refreshed from the stored
        value when that one is still in the future, otherwise the session is
        considered expired.
        """
        now = clock.utcnow()
        mirror = session.data.token_expires_at
        if mirror is not None and mirror > now:
            return True
        if stored_expires_at is not None and stored_expires_at > now:
            session.data.token_expires_at = stored_expires_at
            return True
        return mirror is None and stored_expires_at is None

    # Cookie

    def set_cookie(self, response: Response, session: ServerSession) -> None:
        """Issue the HttpOnly session cookie, renewing its max age."""
        response.set_cookie(
            key=self.settings.session_cookie_name,
            value=self.encode_cookie(session.sid),
            max_age=self.settings.session_ttl_seconds,
            path=self.settings.session_cookie_path,
            domain=self.settings.session_cookie_domain,
            secure=self.settings.cookie_secure,
            httponly=True,
            samesite=self.settings.cookie_samesite,
        )

    def clear_cookie(self, response: Response) -> None:
        """Clear the session cookie with the attributes used to set it."""
        response.delete_cookie(
            key=self.settings.session_cookie_name,
            path=self.settings.session_cookie_path,
            domain=self.settings.session_cookie_domain,
            secure=self.settings.cookie_secure,
            httponly=True,
            samesite=self.settings.cookie_samesite,
        )
