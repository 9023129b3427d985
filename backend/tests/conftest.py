import os
import sys
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

os.environ.setdefault("SECRET_KEY", "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SPOTIFY_CLIENT_ID", "test-client-id")
os.environ.setdefault("SPOTIFY_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("SPOTIFY_REDIRECT_URI", "http://testserver/auth/callback")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app import models  # noqa: E402,F401
from app.api import deps  # noqa: E402
from app.api.auth import router as auth_router  # noqa: E402
from app.api.error_handling import register_exception_handlers  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import Base  # noqa: E402
from app.services import clock  # noqa: E402
from app.services.rate_limit import RateLimiter  # noqa: E402

TOKEN_URL = "https://accounts.spotify.com/api/token"
ME_URL = "https://api.spotify.com/v1/me"
COOKIE_NAME = "soundSouls.sid"


class FrozenClock:
    """Replacement for clock.utcnow that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class SpotifyStub:
    """respx routes for the token endpoint and ``GET /me`` with editable answers."""

    def __init__(self, router: respx.MockRouter) -> None:
        self.token_status = 200
        self.token_json = {
            "access_token": "access-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "refresh-1",
            "scope": "user-read-private user-read-email",
        }
        self.me_status = 200
        self.me_json = {
            "id": "spotify-user-1",
            "display_name": "Test Listener",
            "email": "listener@example.com",
            "images": [{"url": "https://i.scdn.co/image/avatar", "height": 300, "width": 300}],
        }
        self.token_route = router.post(TOKEN_URL).mock(side_effect=self._token)
        self.me_route = router.get(ME_URL).mock(side_effect=self._me)

    def _token(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(self.token_status, json=self.token_json)

    def _me(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(self.me_status, json=self.me_json)

    def token_form(self, index: int = -1) -> dict[str, str]:
        request = self.token_route.calls[index].request
        return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


@pytest.fixture
def frozen_clock(monkeypatch):
    frozen = FrozenClock(datetime(2026, 3, 1, 12, 0, 0))
    monkeypatch.setattr(clock, "utcnow", frozen)
    return frozen


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def app(session_factory):
    application = FastAPI()
    register_exception_handlers(application)
    application.include_router(auth_router)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    limiter = RateLimiter(max_attempts=1000, window_seconds=900)
    application.dependency_overrides[deps.get_db] = override_get_db
    application.dependency_overrides[deps.get_auth_rate_limiter] = lambda: limiter
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def spotify():
    with respx.mock(assert_all_called=False) as router:
        yield SpotifyStub(router)


def state_from_location(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


def start_login(client: TestClient) -> str:
    response = client.get("/auth/login", follow_redirects=False)
    assert response.status_code == 302
    return state_from_location(response.headers["location"])


def complete_login(client: TestClient, code: str = "abc") -> httpx.Response:
    state = start_login(client)
    return client.get(
        "/auth/callback",
        params={"code": code, "state": state},
        follow_redirects=False,
    )


def csrf_token(client: TestClient) -> str:
    status = client.get("/auth/status").json()
    assert status["isLoggedIn"] is True
    return status["csrfToken"]
