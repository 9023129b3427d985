"""Spotify accounts service and Web API client."""
from datetime import datetime, timedelta
import logging
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, EmailStr, Field

from app.config import Settings
from app.services.errors import UpstreamError

logger = logging.getLogger(__name__)


class TokenGrant(BaseModel):
    """Token endpoint response."""

    access_token: str = Field(..., min_length=1)
    expires_in: int = Field(..., gt=0)
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)


class SpotifyIdentity(BaseModel):
    """The subset of ``GET /me`` the app relies on."""

    id: str = Field(..., min_length=1)
    display_name: str | None = None
    email: EmailStr | None = None
    profile_image: str | None = None

    @classmethod
    def from_api(cls, payload: Any) -> "SpotifyIdentity":
        """Map the provider payload, failing closed on an unexpected shape."""
        if not isinstance(payload, dict):
            raise ValueError("Identity payload is not an object")
        images = payload.get("images") or []
        if not isinstance(images, list):
            raise ValueError("Identity images is not a list")
        profile_image = None
        if images and isinstance(images[0], dict):
            profile_image = images[0].get("url")
        return cls(
            id=payload.get("id"),
            display_name=payload.get("display_name"),
            email=payload.get("email"),
            profile_image=profile_image,
        )


def _error_details(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


def _error_message(response: httpx.Response, fallback: str) -> str:
    details = _error_details(response)
    if isinstance(details, dict):
        error = details.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or fallback)
        return str(details.get("error_description") or error or fallback)
    return fallback


class SpotifyClient:
    """Authorization-code exchange, token refresh and identity lookup."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def authorize_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.spotify_client_id,
            "scope": " ".join(self.settings.spotify_scopes),
            "redirect_uri": self.settings.spotify_redirect_uri,
            "state": state,
        }
        if self.settings.spotify_show_dialog:
            params["show_dialog"] = "true"
        return f"{self.settings.spotify_auth_url}?{urlencode(params)}"

    def exchange_code(self, code: str) -> TokenGrant:
        return self._request_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.spotify_redirect_uri,
        })

    def refresh(self, refresh_token: str) -> TokenGrant:
        return self._request_token({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    def fetch_identity(self, access_token: str) -> SpotifyIdentity:
        url = f"{self.settings.spotify_api_base_url}/me"
        try:
            with httpx.Client(timeout=self.settings.http_timeout_seconds) as client:
                resp = client.get(url, headers={"Authorization": f"Bearer {access_token}"})
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Identity request failed: HTTP {e.response.status_code}")
            raise UpstreamError(
                _error_message(e.response, "Failed to fetch Spotify profile"),
                details=_error_details(e.response),
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Identity request failed: {e}")
            raise UpstreamError("Spotify API unreachable") from e

        try:
            return SpotifyIdentity.from_api(resp.json())
        except ValueError as e:
            logger.error(f"Unexpected identity response shape: {e}")
            raise UpstreamError("Unexpected Spotify profile response") from e

    def _request_token(self, data: dict[str, str]) -> TokenGrant:
        # Authorization codes are single-use and refresh failures mean revoked
        # consent, so a failed call is never retried.
        try:
            with httpx.Client(timeout=self.settings.http_timeout_seconds) as client:
                resp = client.post(
                    self.settings.spotify_token_url,
                    data=data,
                    auth=(self.settings.spotify_client_id, self.settings.spotify_client_secret),
                )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Token request ({data['grant_type']}) failed: HTTP {e.response.status_code}")
            raise UpstreamError(
                _error_message(e.response, "Token request failed"),
                details=_error_details(e.response),
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Token request ({data['grant_type']}) failed: {e}")
            raise UpstreamError("Spotify accounts service unreachable") from e

        try:
            return TokenGrant.model_validate(resp.json())
        except ValueError as e:
            logger.error(f"Unexpected token response shape: {e}")
            raise UpstreamError("Unexpected token response") from e
