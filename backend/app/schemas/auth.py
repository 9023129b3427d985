"""Authentication schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RefreshRequest(BaseModel):
    """Token refresh request."""

    refresh_token: str | None = None


class RefreshResponse(BaseModel):
    """Refreshed access token."""

    access_token: str
    expires_in: int
    token_expires_at: datetime


class StatusUser(BaseModel):
    id: str
    display_name: str | None = None
    profile_image: str | None = None


class StatusResponse(BaseModel):
    """Login status; never an error."""

    model_config = ConfigDict(populate_by_name=True)

    is_logged_in: bool = Field(..., alias="isLoggedIn")
    user: StatusUser | None = None
    csrf_token: str | None = Field(None, alias="csrfToken")
    token_expires_at: datetime | None = None


class UserProfileResponse(BaseModel):
    """Current user info."""

    id: str
    display_name: str | None = None
    email: str | None = None
    profile_image: str | None = None


class LogoutResponse(BaseModel):
    success: bool = True
