"""Shared API dependencies and the request guard."""
import logging

from fastapi import Depends, Request, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.database import get_db
from app.services import audit, clock, token_store
from app.services.errors import ForbiddenError, PersistenceError, RateLimitedError, UnauthorizedError
from app.services.oauth import OAuthFlow
from app.services.rate_limit import RateLimiter
from app.services.session_store import DatabaseSessionStore, MemorySessionStore, SessionStore
from app.services.sessions import ServerSession, SessionManager, constant_time_equals
from app.services.spotify import SpotifyClient

__all__ = [
    "get_db",
    "get_session_store",
    "get_session_manager",
    "get_spotify_client",
    "get_oauth_flow",
    "get_auth_rate_limiter",
    "get_current_session",
    "enforce_auth_rate_limit",
    "require_session",
    "enforce_session_cap",
    "verify_csrf",
    "expire_session",
]

logger = logging.getLogger(__name__)
settings = get_settings()

CSRF_HEADER = "x-csrf-token"
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_memory_store = MemorySessionStore()
_auth_rate_limiter = RateLimiter(
    max_attempts=settings.auth_rate_limit_attempts,
    window_seconds=settings.auth_rate_limit_window_seconds,
)


def get_session_store(db: Session = Depends(get_db)) -> SessionStore:
    if settings.session_backend == "memory":
        return _memory_store
    return DatabaseSessionStore(db)


def get_session_manager(store: SessionStore = Depends(get_session_store)) -> SessionManager:
    return SessionManager(store, settings)


def get_spotify_client() -> SpotifyClient:
    return SpotifyClient(settings)


def get_oauth_flow(
    db: Session = Depends(get_db),
    manager: SessionManager = Depends(get_session_manager),
    client: SpotifyClient = Depends(get_spotify_client),
) -> OAuthFlow:
    return OAuthFlow(db, manager, client, settings)


def get_auth_rate_limiter() -> RateLimiter:
    return _auth_rate_limiter


def get_current_session(
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> ServerSession:
    """Load the caller's session, anonymous if there is none."""
    return manager.load(request)


def enforce_auth_rate_limit(
    request: Request,
    session: ServerSession = Depends(get_current_session),
    limiter: RateLimiter = Depends(get_auth_rate_limiter),
) -> None:
    """Throttle anonymous callers of the login and refresh endpoints per IP."""
    if session.data.is_authenticated:
        return
    identifier = audit.get_request_ip(request, trust_forwarded_for=settings.trust_forwarded_for) or "unknown"
    allowed, _ = limiter.check_and_increment(identifier)
    if not allowed:
        logger.warning(f"Auth rate limit exceeded for {identifier}")
        raise RateLimitedError("Too many requests, please try again later")


def verify_csrf(request: Request, session: ServerSession) -> bool:
    """True unless a state-changing request lacks the session's exact CSRF token."""
    if request.method not in STATE_CHANGING_METHODS:
        return True
    return constant_time_equals(session.data.csrf_token, request.headers.get(CSRF_HEADER))


def expire_session(db: Session, manager: SessionManager, session: ServerSession) -> None:
    """Destroy a session whose access token lapsed and close its audit row."""
    user_id = session.data.user_id
    audit_id = session.data.audit_id
    session_start = session.data.session_start
    manager.destroy(session)
    if not (user_id and audit_id):
        return
    try:
        audit.close_session(
            db,
            user_id,
            clock.utcnow(),
            audit_id=audit_id,
            session_start=session_start,
            fallback_to_latest=False,
        )
        db.commit()
    except SQLAlchemyError:
        # The session is already gone from the store, so the next login
        # closes this row as orphaned.
        db.rollback()
        logger.exception(f"Failed to close audit row {audit_id}")


def require_session(
    request: Request,
    response: Response,
    session: ServerSession = Depends(get_current_session),
    manager: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
) -> ServerSession:
    """Guard for protected routes.

    State-changing requests without the session's CSRF header are rejected
    (403) whatever state the session is in; otherwise anonymous or expired
    sessions get a 401. For authenticated sessions the CSRF token is rotated
    once the rotation interval has passed, whatever the outcome.
    """
    csrf_ok = verify_csrf(request, session)
    if not session.data.is_authenticated:
        if not csrf_ok:
            raise ForbiddenError("Invalid CSRF token")
        raise UnauthorizedError("Unauthorized - Please log in")

    mirror = session.data.token_expires_at
    if mirror is None or mirror <= clock.utcnow():
        user = token_store.get_user(db, session.data.user_id)
        stored = clock.parse_timestamp(user.token_expires_at) if user is not None else None
        if user is None or not manager.token_mirror_valid(session, stored):
            expire_session(db, manager, session)
            if not csrf_ok:
                raise ForbiddenError("Invalid CSRF token")
            raise UnauthorizedError("Session expired")

    rotated = manager.rotate_csrf_if_due(session)
    manager.save(session)
    manager.set_cookie(response, session)
    if rotated:
        response.headers["X-CSRF-Token"] = session.data.csrf_token

    if not csrf_ok:
        logger.warning(f"Invalid CSRF token on {request.method} {request.url.path}")
        raise ForbiddenError("Invalid CSRF token")
    return session


def enforce_session_cap(
    session: ServerSession = Depends(require_session),
    manager: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
) -> ServerSession:
    """Reject callers whose user already holds the maximum of other open sessions.

    The callback refuses a login once the cap is reached, so this only
    trips when callbacks for one user raced past that check, or rows were
    opened outside the login flow. The caller's own row is not counted, so
    a user holding exactly the maximum keeps working.
    """
    user_id = session.data.user_id
    try:
        if audit.close_orphaned_sessions(db, user_id, manager.store, clock.utcnow()):
            db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Failed to update session audit") from exc
    others = audit.open_session_count(db, user_id, exclude_audit_id=session.data.audit_id)
    if others >= settings.max_concurrent_sessions:
        logger.warning(f"Concurrent session limit reached for user {session.data.user_id}")
        raise ForbiddenError("Maximum concurrent sessions reached")
    return session
