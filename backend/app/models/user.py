"""User model."""
import uuid

from sqlalchemy import Column, String, Text
from sqlalchemy.orm import relationship

from app.database import Base
from app.services import clock


class User(Base):
    """Spotify account linked to the app, with its current OAuth tokens."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    spotify_id = Column(String(64), unique=True, nullable=False, index=True)
    display_name = Column(String(255))
    email = Column(String(255))
    profile_image = Column(Text)

    # Tokens
    access_token = Column(Text, nullable=False)
    refresh_token = Column(String(512), index=True)
    token_expires_at = Column(String(26))  # ISO-8601 UTC

    created_at = Column(String(26), default=lambda: clock.utcnow().isoformat())
    updated_at = Column(String(26), default=lambda: clock.utcnow().isoformat(), onupdate=lambda: clock.utcnow().isoformat())

    # Relationships
    session_audits = relationship("SessionAudit", back_populates="user", cascade="all, delete-orphan")
    auth_attempts = relationship("AuthAttempt", back_populates="user")
