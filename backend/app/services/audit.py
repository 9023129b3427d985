"""Login audit trail and concurrent-session accounting."""
from datetime import datetime
import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.auth import AuthAttempt, SessionAudit
from app.services import clock
from app.services.session_store import SessionStore

logger = logging.getLogger(__name__)


def get_request_ip(request: Request, trust_forwarded_for: bool = True) -> str | None:
    """Extract best-effort client IP for session metadata.

    ``X-Forwarded-For`` is client-controlled unless a proxy rewrites it, so
    callers that enforce limits pass ``trust_forwarded_for`` from settings.
    """
    xff = request.headers.get("x-forwarded-for") if trust_forwarded_for else None
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    user_agent = request.headers.get("user-agent")
    return user_agent[:255] if user_agent else None


def open_session_count(db: Session, user_id: str, exclude_audit_id: str | None = None) -> int:
    """Count audit rows for the user that have not been logged out."""
    query = db.query(SessionAudit).filter(
        SessionAudit.user_id == user_id,
        SessionAudit.logout_at.is_(None),
    )
    if exclude_audit_id:
        query = query.filter(SessionAudit.id != exclude_audit_id)
    return query.count()


def record_login(
    db: Session,
    user_id: str,
    request: Request,
    now: datetime,
    session_id: str | None = None,
) -> SessionAudit:
    """Add an open audit row for a new login. Caller commits."""
    audit = SessionAudit(
        user_id=user_id,
        session_id=session_id,
        ip_address=get_request_ip(request),
        user_agent=_user_agent(request),
        login_at=now.isoformat(),
    )
    db.add(audit)
    db.flush()
    return audit


def close_session(
    db: Session,
    user_id: str,
    now: datetime,
    audit_id: str | None = None,
    session_start: datetime | None = None,
    fallback_to_latest: bool = True,
) -> SessionAudit | None:
    """Close one open audit row: the session's own if known, else the most recent.

    With ``fallback_to_latest=False`` only the session's own row is closed.
    Caller commits.
    """
    audit = None
    if audit_id:
        audit = db.query(SessionAudit).filter(
            SessionAudit.id == audit_id,
            SessionAudit.user_id == user_id,
            SessionAudit.logout_at.is_(None),
        ).first()
    if audit is None and fallback_to_latest:
        audit = db.query(SessionAudit).filter(
            SessionAudit.user_id == user_id,
            SessionAudit.logout_at.is_(None),
        ).order_by(SessionAudit.login_at.desc()).first()
    if audit is None:
        return None

    _mark_closed(audit, now, session_start)
    db.flush()
    return audit


def close_orphaned_sessions(db: Session, user_id: str, store: SessionStore, now: datetime) -> int:
    """Close open rows whose server-side session no longer exists.

    Covers sessions that lapsed in the store or were dropped without a
    logout. Rows not tied to a session id are left open. Caller commits.
    """
    rows = db.query(SessionAudit).filter(
        SessionAudit.user_id == user_id,
        SessionAudit.logout_at.is_(None),
        SessionAudit.session_id.isnot(None),
    ).all()
    closed = 0
    for row in rows:
        if store.get(row.session_id) is None:
            _mark_closed(row, now)
            closed += 1
    if closed:
        db.flush()
        logger.info(f"Closed {closed} orphaned audit rows for user {user_id}")
    return closed


def _mark_closed(audit: SessionAudit, now: datetime, session_start: datetime | None = None) -> None:
    started = session_start or clock.parse_timestamp(audit.login_at) or now
    audit.logout_at = now.isoformat()
    audit.session_duration = max((now - started).total_seconds(), 0.0)


def log_auth_attempt(
    db: Session,
    request: Request,
    error: str | None = None,
    user_id: str | None = None,
    audit_id: str | None = None,
) -> None:
    """Record a callback outcome. A failed write never changes that outcome."""
    try:
        db.add(AuthAttempt(
            user_id=user_id,
            session_audit_id=audit_id,
            ip_address=get_request_ip(request),
            user_agent=_user_agent(request),
            error=error,
            attempted_at=clock.utcnow().isoformat(),
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to log auth attempt")
