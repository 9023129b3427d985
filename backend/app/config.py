"""Application configuration."""
from collections import Counter
from functools import lru_cache
import math

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "SoundSouls"
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./data/soundsouls.db"
    database_key: str = ""

    # Signing
    secret_key: str
    algorithm: str = "HS256"

    # Spotify
    spotify_client_id: str
    spotify_client_secret: str
    spotify_redirect_uri: str = "http://localhost:3000/auth/callback"
    spotify_auth_url: str = "https://accounts.spotify.com/authorize"
    spotify_token_url: str = "https://accounts.spotify.com/api/token"
    spotify_api_base_url: str = "https://api.spotify.com/v1"
    spotify_scopes: list[str] = [
        "user-read-private",
        "user-read-email",
        "user-top-read",
        "playlist-modify-public",
        "playlist-modify-private",
    ]
    spotify_show_dialog: bool = True
    http_timeout_seconds: float = 10.0

    # Frontend
    frontend_url: str = "http://localhost:5173"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Session
    session_cookie_name: str = "soundSouls.sid"
    session_cookie_path: str = "/"
    session_cookie_domain: str | None = None
    session_cookie_samesite: str | None = None
    session_ttl_seconds: int = 24 * 60 * 60
    session_backend: str = "database"

    # Security
    oauth_state_ttl_seconds: int = 300
    csrf_rotation_seconds: int = 15 * 60
    max_concurrent_sessions: int = 3
    state_nbytes: int = 16
    csrf_nbytes: int = 32
    auth_rate_limit_attempts: int = 10
    auth_rate_limit_window_seconds: int = 15 * 60
    # Only enable behind a proxy that overwrites X-Forwarded-For
    trust_forwarded_for: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cookie_secure(self) -> bool:
        return self.is_production

    @property
    def cookie_samesite(self) -> str:
        if self.session_cookie_samesite:
            return self.session_cookie_samesite
        return "none" if self.is_production else "lax"

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str) -> str:
        """Fail closed if SECRET_KEY is weak or placeholder quality."""
        if not value:
            raise ValueError("SECRET_KEY must be set.")

        if len(value) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        weak_values = {"changeme", "changeme-in-production", "secret", "password", "test"}
        lowered = value.lower()
        if lowered in weak_values or "changeme" in lowered:
            raise ValueError("SECRET_KEY must not be a placeholder value.")

        counts = Counter(value)
        entropy_per_char = -sum((count / len(value)) * math.log2(count / len(value)) for count in counts.values())
        estimated_entropy_bits = entropy_per_char * len(value)
        if estimated_entropy_bits < 100:
            raise ValueError("SECRET_KEY entropy is too low; use a cryptographically random value.")

        return value

    @field_validator("session_backend")
    @classmethod
    def validate_session_backend(cls, value: str) -> str:
        if value not in ("database", "memory"):
            raise ValueError("SESSION_BACKEND must be 'database' or 'memory'.")
        return value

    @field_validator("session_cookie_samesite")
    @classmethod
    def validate_samesite(cls, value: str | None) -> str | None:
        if value is not None and value.lower() not in ("lax", "strict", "none"):
            raise ValueError("SESSION_COOKIE_SAMESITE must be lax, strict or none.")
        return value.lower() if value else value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
