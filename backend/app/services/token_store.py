"""Persistence of provider identity and OAuth tokens."""
from datetime import datetime
import uuid

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.models.user import User
from app.services.spotify import SpotifyIdentity, TokenGrant

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def get_user(db: Session, user_id: str) -> User | None:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_spotify_id(db: Session, spotify_id: str) -> User | None:
    return db.query(User).filter(User.spotify_id == spotify_id).first()


def get_user_by_refresh_token(db: Session, refresh_token: str) -> User | None:
    return db.query(User).filter(User.refresh_token == refresh_token).first()


def upsert_user(db: Session, identity: SpotifyIdentity, grant: TokenGrant, now: datetime) -> User:
    """Insert or update the user keyed by Spotify id. Caller commits."""
    values = {
        "display_name": identity.display_name,
        "email": identity.email,
        "profile_image": identity.profile_image,
        "access_token": grant.access_token,
        "token_expires_at": grant.expires_at(now).isoformat(),
        "updated_at": now.isoformat(),
    }
    if grant.refresh_token:
        values["refresh_token"] = grant.refresh_token

    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert is not None:
        stmt = insert(User).values(
            id=str(uuid.uuid4()),
            spotify_id=identity.id,
            created_at=now.isoformat(),
            **values,
        )
        stmt = stmt.on_conflict_do_update(index_elements=[User.spotify_id], set_=values)
        db.execute(stmt)
        db.expire_all()
    else:
        user = get_user_by_spotify_id(db, identity.id)
        if user is None:
            user = User(spotify_id=identity.id, created_at=now.isoformat())
            db.add(user)
        for key, value in values.items():
            setattr(user, key, value)
        db.flush()

    return get_user_by_spotify_id(db, identity.id)


def update_tokens_by_refresh_token(
    db: Session,
    refresh_token: str,
    grant: TokenGrant,
    now: datetime,
) -> int:
    """Store a refreshed grant on the user matched by refresh token. Caller commits."""
    values = {
        "access_token": grant.access_token,
        "token_expires_at": grant.expires_at(now).isoformat(),
        "updated_at": now.isoformat(),
    }
    if grant.refresh_token:
        values["refresh_token"] = grant.refresh_token

    return db.query(User).filter(
        User.refresh_token == refresh_token,
    ).update(values, synchronize_session=False)
