"""Authentication/session models."""
import uuid

from sqlalchemy import Column, Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship

from app.database import Base
from app.services import clock


class SessionAudit(Base):
    """One row per successful login; closed on logout."""

    __tablename__ = "session_audit"
    __table_args__ = (
        Index("ix_session_audit_user_open", "user_id", "logout_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String(128), index=True)  # server-side session the row belongs to
    ip_address = Column(String(45))
    user_agent = Column(String(255))
    login_at = Column(String(26), nullable=False, default=lambda: clock.utcnow().isoformat())
    logout_at = Column(String(26))
    session_duration = Column(Float)  # seconds

    user = relationship("User", back_populates="session_audits")


class AuthAttempt(Base):
    """Outcome of a single OAuth callback, successful or not."""

    __tablename__ = "auth_attempts"
    __table_args__ = (
        Index("ix_auth_attempts_attempted_at", "attempted_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"))
    session_audit_id = Column(String(36), ForeignKey("session_audit.id", ondelete="SET NULL"))
    ip_address = Column(String(45))
    user_agent = Column(String(255))
    error = Column(Text)
    attempted_at = Column(String(26), nullable=False, default=lambda: clock.utcnow().isoformat())

    user = relationship("User", back_populates="auth_attempts")


class StoredSession(Base):
    """Server-side session payload keyed by session id."""

    __tablename__ = "user_sessions"

    sid = Column(String(128), primary_key=True)
    data = Column(Text, nullable=False, default="{}")  # JSON
    expires_at = Column(String(26), nullable=False, index=True)
