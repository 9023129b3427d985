"""Spotify OAuth authorization-code flow and token refresh."""
from dataclasses import dataclass
from datetime import datetime
import hashlib
import logging
from urllib.parse import quote

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings
from app.services import audit, clock, token_store
from app.services.errors import BadRequestError, PersistenceError, SessionStoreError, UpstreamError
from app.services.locks import KeyedLocks
from app.services.sessions import OAuthState, ServerSession, SessionManager
from app.services.spotify import SpotifyClient

logger = logging.getLogger(__name__)

# Error codes placed in the frontend ``/login?error=`` redirect.
STATE_MISMATCH = "state_mismatch"
STATE_EXPIRED = "state_expired"
INVALID_CODE = "invalid_code"
AUTH_FAILED = "auth_failed"
SESSION_LIMIT = "session_limit"

refresh_locks = KeyedLocks()


@dataclass
class CallbackOutcome:
    """Where to send the browser after the callback, and with which session."""

    session: ServerSession
    redirect_url: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int
    token_expires_at: datetime
    session_updated: bool = False


class OAuthFlow:
    """Drives login initiation, the provider callback and token refresh."""

    def __init__(
        self,
        db: Session,
        sessions: SessionManager,
        client: SpotifyClient,
        settings: Settings,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.db = db
        self.sessions = sessions
        self.client = client
        self.settings = settings
        self.locks = locks or refresh_locks

    # Redirect targets

    def success_url(self) -> str:
        return f"{self.settings.frontend_url}/profile"

    def error_url(self, error: str) -> str:
        return f"{self.settings.frontend_url}/login?error={quote(error, safe='')}"

    # Login

    def initiate(self, session: ServerSession) -> str:
        """Store a fresh state nonce and CSRF token, then build the authorize URL.

        The session is saved before the URL is returned; a store failure
        propagates so the caller answers with a server error instead of a
        redirect that could never be completed.
        """
        now = clock.utcnow()
        oauth_state = OAuthState.issue(self.settings.state_nbytes, self.settings.oauth_state_ttl_seconds)
        session.data.oauth_state = oauth_state
        session.data.login_attempt_at = now
        self.sessions.issue_csrf(session, now)
        self.sessions.save(session)

        logger.info(f"Login initiated, state {oauth_state.nonce[:6]}...")
        return self.client.authorize_url(oauth_state.nonce)

    # Callback

    def complete(
        self,
        session: ServerSession,
        request: Request,
        code: str | None,
        state: str | None,
        provider_error: str | None = None,
    ) -> CallbackOutcome:
        """Validate the callback and, if every gate passes, authenticate a new session."""
        try:
            outcome = self._complete(session, request, code, state, provider_error)
        except SessionStoreError as exc:
            audit.log_auth_attempt(self.db, request, error=exc.message)
            raise

        if not outcome.ok:
            self._clear_state(session)
        return outcome

    def _complete(
        self,
        session: ServerSession,
        request: Request,
        code: str | None,
        state: str | None,
        provider_error: str | None,
    ) -> CallbackOutcome:
        stored_state = session.data.oauth_state

        if provider_error:
            logger.warning(f"Provider reported callback error: {provider_error}")
            return self._fail(session, request, provider_error, provider_error)

        if stored_state is None or not stored_state.matches(state):
            logger.warning("State mismatch - possible CSRF attack on callback")
            return self._fail(session, request, STATE_MISMATCH, "State mismatch - possible CSRF attack")

        if stored_state.is_expired():
            logger.warning("State expired - authentication took too long")
            return self._fail(session, request, STATE_EXPIRED, "State expired - authentication took too long")

        if not code:
            return self._fail(session, request, INVALID_CODE, "Missing authorization code")

        try:
            grant = self.client.exchange_code(code)
        except UpstreamError as exc:
            return self._fail(session, request, INVALID_CODE, f"Code exchange failed: {exc.message}")

        try:
            identity = self.client.fetch_identity(grant.access_token)
        except UpstreamError as exc:
            return self._fail(session, request, AUTH_FAILED, f"Identity fetch failed: {exc.message}")

        now = clock.utcnow()
        # A login from an already authenticated browser replaces that session.
        replaced_user_id = session.data.user_id
        replaced_audit_id = session.data.audit_id if replaced_user_id else None
        new_sid = self.sessions.new_session_id()
        try:
            existing = token_store.get_user_by_spotify_id(self.db, identity.id)
            if existing is not None:
                if audit.close_orphaned_sessions(self.db, existing.id, self.sessions.store, now):
                    self.db.commit()
                exclude = replaced_audit_id if replaced_user_id == existing.id else None
                open_sessions = audit.open_session_count(self.db, existing.id, exclude_audit_id=exclude)
                if open_sessions >= self.settings.max_concurrent_sessions:
                    logger.warning(f"Concurrent session limit reached for user {existing.id}")
                    return self._fail(
                        session, request, SESSION_LIMIT, "Maximum concurrent sessions reached", user_id=existing.id,
                    )
            user = token_store.upsert_user(self.db, identity, grant, now)
            audit_row = audit.record_login(self.db, user.id, request, now, session_id=new_sid)
            if replaced_audit_id:
                audit.close_session(
                    self.db,
                    replaced_user_id,
                    now,
                    audit_id=replaced_audit_id,
                    session_start=session.data.session_start,
                    fallback_to_latest=False,
                )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to persist user after callback")
            return self._fail(session, request, AUTH_FAILED, "Failed to persist user")

        try:
            authenticated = self.sessions.regenerate(session, sid=new_sid)
            authenticated.data.user_id = user.id
            authenticated.data.spotify_id = user.spotify_id
            authenticated.data.audit_id = audit_row.id
            authenticated.data.session_start = now
            authenticated.data.token_expires_at = grant.expires_at(now)
            self.sessions.issue_csrf(authenticated, now)
            self.sessions.save(authenticated)
        except SessionStoreError:
            audit.close_session(
                self.db, user.id, clock.utcnow(), audit_id=audit_row.id, session_start=now, fallback_to_latest=False,
            )
            self.db.commit()
            raise

        audit.log_auth_attempt(self.db, request, user_id=user.id, audit_id=audit_row.id)
        logger.info(f"User {user.id} logged in")
        return CallbackOutcome(session=authenticated, redirect_url=self.success_url())

    def _fail(
        self,
        session: ServerSession,
        request: Request,
        code: str,
        message: str,
        user_id: str | None = None,
    ) -> CallbackOutcome:
        audit.log_auth_attempt(self.db, request, error=message, user_id=user_id)
        return CallbackOutcome(session=session, redirect_url=self.error_url(code), error=code)

    def _clear_state(self, session: ServerSession) -> None:
        """Drop the one-time state so it can never be replayed.

        A pending login that fails falls back to anonymous, so nothing else
        from the handshake is kept either.
        """
        if session.destroyed:
            return
        if session.data.is_authenticated:
            session.data.oauth_state = None
            if session.persisted:
                self.sessions.save(session)
        else:
            self.sessions.destroy(session)

    # Refresh

    def refresh(self, refresh_token: str | None, session: ServerSession | None = None) -> RefreshResult:
        """Exchange a refresh token and store the new grant.

        Refreshes for one user are serialized; a caller that waited while
        another refresh for the same user completed reuses the stored token.
        """
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            raise BadRequestError("Missing refresh token")

        user = token_store.get_user_by_refresh_token(self.db, refresh_token)
        lock_key = user.id if user is not None else hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()
        waiting_since = clock.utcnow()

        with self.locks.hold(lock_key):
            if user is not None:
                self.db.refresh(user)
                reused = self._recently_refreshed(user, waiting_since)
                if reused is not None:
                    reused.session_updated = self._update_mirror(session, user.id, reused.token_expires_at)
                    return reused

            grant = self.client.refresh(refresh_token)

            now = clock.utcnow()
            try:
                updated = token_store.update_tokens_by_refresh_token(self.db, refresh_token, grant, now)
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Failed to store refreshed token")
                raise PersistenceError("Failed to store refreshed token") from exc

        if not updated:
            logger.info("Refreshed a token that matches no stored user")
        expires_at = grant.expires_at(now)
        session_updated = user is not None and self._update_mirror(session, user.id, expires_at)
        return RefreshResult(
            access_token=grant.access_token,
            expires_in=grant.expires_in,
            token_expires_at=expires_at,
            session_updated=session_updated,
        )

    def _recently_refreshed(self, user, waiting_since: datetime) -> RefreshResult | None:
        updated_at = clock.parse_timestamp(user.updated_at)
        expires_at = clock.parse_timestamp(user.token_expires_at)
        now = clock.utcnow()
        if updated_at is None or expires_at is None:
            return None
        if updated_at <= waiting_since or expires_at <= now:
            return None
        logger.debug(f"Reusing token refreshed concurrently for user {user.id}")
        return RefreshResult(
            access_token=user.access_token,
            expires_in=int((expires_at - now).total_seconds()),
            token_expires_at=expires_at,
        )

    def _update_mirror(self, session: ServerSession | None, user_id: str, expires_at: datetime) -> bool:
        """Slide the caller's expiry mirror if the session belongs to the refreshed user."""
        if session is None or session.destroyed or session.data.user_id != user_id:
            return False
        session.data.token_expires_at = expires_at
        self.sessions.save(session)
        return True
