"""SQLAlchemy models package."""
from app.models.user import User
from app.models.auth import AuthAttempt, SessionAudit, StoredSession

__all__ = [
    "User",
    "SessionAudit",
    "AuthAttempt",
    "StoredSession",
]
