"""Authentication API endpoints."""
import logging

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.deps import (
    enforce_auth_rate_limit,
    enforce_session_cap,
    expire_session,
    get_current_session,
    get_db,
    get_oauth_flow,
    get_session_manager,
    require_session,
    verify_csrf,
)
from app.services import audit, clock, token_store
from app.services.errors import AuthError, ForbiddenError, PersistenceError
from app.services.oauth import OAuthFlow
from app.services.sessions import ServerSession, SessionManager
from app.schemas.auth import (
    LogoutResponse,
    RefreshRequest,
    RefreshResponse,
    StatusResponse,
    StatusUser,
    UserProfileResponse,
)

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.get("/login", dependencies=[Depends(enforce_auth_rate_limit)])
def login(
    session: ServerSession = Depends(get_current_session),
    flow: OAuthFlow = Depends(get_oauth_flow),
    manager: SessionManager = Depends(get_session_manager),
):
    """Start the Spotify authorization-code flow."""
    authorize_url = flow.initiate(session)
    response = RedirectResponse(authorize_url, status_code=status.HTTP_302_FOUND)
    manager.set_cookie(response, session)
    return response


@router.get("/callback")
def callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    session: ServerSession = Depends(get_current_session),
    flow: OAuthFlow = Depends(get_oauth_flow),
    manager: SessionManager = Depends(get_session_manager),
):
    """Handle the provider redirect and send the browser back to the frontend."""
    outcome = flow.complete(session, request, code=code, state=state, provider_error=error)
    response = RedirectResponse(outcome.redirect_url, status_code=status.HTTP_302_FOUND)
    if outcome.session.persisted and not outcome.session.destroyed:
        manager.set_cookie(response, outcome.session)
    elif outcome.session.destroyed:
        manager.clear_cookie(response)
    return response


@router.post("/refresh", response_model=RefreshResponse, dependencies=[Depends(enforce_auth_rate_limit)])
def refresh_token(
    payload: RefreshRequest,
    request: Request,
    response: Response,
    session: ServerSession = Depends(get_current_session),
    flow: OAuthFlow = Depends(get_oauth_flow),
    manager: SessionManager = Depends(get_session_manager),
):
    """Exchange a Spotify refresh token for a new access token."""
    if session.data.is_authenticated and not verify_csrf(request, session):
        raise ForbiddenError("Invalid CSRF token")
    result = flow.refresh(payload.refresh_token, session)
    if result.session_updated:
        manager.set_cookie(response, session)
    return RefreshResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        token_expires_at=result.token_expires_at,
    )


@router.post("/logout", response_model=LogoutResponse)
def logout(
    session: ServerSession = Depends(require_session),
    manager: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
):
    """Close the session's audit row, destroy the session and clear the cookie."""
    user_id = session.data.user_id
    try:
        audit.close_session(
            db,
            user_id,
            clock.utcnow(),
            audit_id=session.data.audit_id,
            session_start=session.data.session_start,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Failed to logout") from exc

    manager.destroy(session)
    response = JSONResponse(LogoutResponse().model_dump())
    manager.clear_cookie(response)
    logger.info(f"User {user_id} logged out")
    return response


@router.get("/status", response_model=StatusResponse, response_model_exclude_none=True)
def auth_status(
    response: Response,
    session: ServerSession = Depends(get_current_session),
    manager: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
):
    """Report whether the caller is logged in. Never fails."""
    if not session.data.is_authenticated:
        return StatusResponse(is_logged_in=False)

    try:
        user = token_store.get_user(db, session.data.user_id)
        stored_expiry = clock.parse_timestamp(user.token_expires_at) if user is not None else None
        if user is None or not manager.token_mirror_valid(session, stored_expiry):
            expire_session(db, manager, session)
            manager.clear_cookie(response)
            return StatusResponse(is_logged_in=False)

        manager.save(session)
        manager.set_cookie(response, session)
    except (SQLAlchemyError, AuthError):
        logger.exception("Session status check failed")
        return StatusResponse(is_logged_in=False)

    return StatusResponse(
        is_logged_in=True,
        user=StatusUser(
            id=user.spotify_id,
            display_name=user.display_name,
            profile_image=user.profile_image,
        ),
        csrf_token=session.data.csrf_token,
        token_expires_at=session.data.token_expires_at,
    )


@router.get("/me", response_model=UserProfileResponse)
def get_me(
    session: ServerSession = Depends(enforce_session_cap),
    db: Session = Depends(get_db),
):
    """Get the logged-in user's Spotify profile."""
    user = token_store.get_user(db, session.data.user_id)
    if user is None:
        raise AuthError("User not found", status_code=status.HTTP_404_NOT_FOUND)
    return UserProfileResponse(
        id=user.spotify_id,
        display_name=user.display_name,
        email=user.email,
        profile_image=user.profile_image,
    )
