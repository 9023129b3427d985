from datetime import timedelta
from urllib.parse import parse_qs, urlparse

from conftest import COOKIE_NAME, complete_login, start_login

from app.models.auth import AuthAttempt, SessionAudit, StoredSession
from app.models.user import User
from app.services.sessions import SessionManager


def _sid(settings, cookie_value: str) -> str:
    return SessionManager(store=None, settings=settings).decode_cookie(cookie_value)


def test_login_redirects_to_spotify_with_state(client, settings, db):
    response = client.get("/auth/login", follow_redirects=False)

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    params = parse_qs(location.query)
    assert f"{location.scheme}://{location.netloc}{location.path}" == settings.spotify_auth_url
    assert params["response_type"] == ["code"]
    assert params["client_id"] == ["test-client-id"]
    assert params["redirect_uri"] == ["http://testserver/auth/callback"]
    assert params["scope"] == [" ".join(settings.spotify_scopes)]
    assert params["show_dialog"] == ["true"]
    assert len(params["state"][0]) == 32

    set_cookie = response.headers["set-cookie"]
    assert f"{COOKIE_NAME}=" in set_cookie
    assert "HttpOnly" in set_cookie
    assert "samesite=lax" in set_cookie.lower()

    sid = _sid(settings, client.cookies[COOKIE_NAME])
    stored = db.get(StoredSession, sid)
    assert stored is not None
    assert params["state"][0] in stored.data


def test_login_issues_new_state_each_time(client):
    assert start_login(client) != start_login(client)


def test_callback_with_mismatched_state_is_rejected(client, spotify, db):
    start_login(client)

    response = client.get(
        "/auth/callback",
        params={"code": "abc", "state": "not-the-state"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == "http://frontend.test/login?error=state_mismatch"
    assert not spotify.token_route.called
    assert db.query(User).count() == 0
    assert db.query(SessionAudit).count() == 0
    attempt = db.query(AuthAttempt).one()
    assert "State mismatch" in attempt.error


def test_callback_without_login_is_rejected(client, spotify, db):
    response = client.get(
        "/auth/callback",
        params={"code": "abc", "state": "anything"},
        follow_redirects=False,
    )

    assert response.headers["location"].endswith("/login?error=state_mismatch")
    assert not spotify.token_route.called


def test_callback_without_state_is_rejected(client, spotify):
    start_login(client)

    response = client.get("/auth/callback", params={"code": "abc"}, follow_redirects=False)

    assert response.headers["location"].endswith("/login?error=state_mismatch")
    assert not spotify.token_route.called


def test_state_is_single_use(client, spotify, db):
    state = start_login(client)
    client.get("/auth/callback", params={"code": "abc", "state": "wrong"}, follow_redirects=False)

    response = client.get(
        "/auth/callback",
        params={"code": "abc", "state": state},
        follow_redirects=False,
    )

    assert response.headers["location"].endswith("/login?error=state_mismatch")
    assert not spotify.token_route.called
    assert db.query(User).count() == 0


def test_expired_state_is_rejected_even_when_matching(client, spotify, frozen_clock, db):
    state = start_login(client)
    frozen_clock.advance(seconds=301)

    response = client.get(
        "/auth/callback",
        params={"code": "abc", "state": state},
        follow_redirects=False,
    )

    assert response.headers["location"] == "http://frontend.test/login?error=state_expired"
    assert not spotify.token_route.called
    assert db.query(User).count() == 0


def test_state_within_expiry_window_is_accepted(client, spotify, frozen_clock):
    state = start_login(client)
    frozen_clock.advance(seconds=299)

    response = client.get(
        "/auth/callback",
        params={"code": "abc", "state": state},
        follow_redirects=False,
    )

    assert response.headers["location"] == "http://frontend.test/profile"


def test_provider_error_redirects_without_exchange(client, spotify, db):
    state = start_login(client)

    response = client.get(
        "/auth/callback",
        params={"error": "access_denied", "state": state},
        follow_redirects=False,
    )

    assert response.headers["location"] == "http://frontend.test/login?error=access_denied"
    assert not spotify.token_route.called
    assert db.query(AuthAttempt).one().error == "access_denied"


def test_failed_code_exchange_redirects_with_invalid_code(client, spotify, db):
    spotify.token_status = 400
    spotify.token_json = {"error": "invalid_grant", "error_description": "Invalid authorization code"}

    response = complete_login(client)

    assert response.headers["location"] == "http://frontend.test/login?error=invalid_code"
    assert spotify.token_route.call_count == 1
    assert not spotify.me_route.called
    assert db.query(User).count() == 0


def test_missing_code_redirects_with_invalid_code(client, spotify):
    state = start_login(client)

    response = client.get("/auth/callback", params={"state": state}, follow_redirects=False)

    assert response.headers["location"].endswith("/login?error=invalid_code")
    assert not spotify.token_route.called


def test_unexpected_identity_shape_fails_closed(client, spotify, db):
    spotify.me_json = {"display_name": "No id here"}

    response = complete_login(client)

    assert response.headers["location"] == "http://frontend.test/login?error=auth_failed"
    assert db.query(User).count() == 0


def test_valid_callback_upserts_user_and_regenerates_session(client, spotify, settings, db):
    start_login(client)
    pending_sid = _sid(settings, client.cookies[COOKIE_NAME])
    state = start_login(client)
    assert _sid(settings, client.cookies[COOKIE_NAME]) == pending_sid

    response = client.get(
        "/auth/callback",
        params={"code": "abc", "state": state},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == "http://frontend.test/profile"
    assert "access-1" not in response.headers["location"]

    new_sid = _sid(settings, client.cookies[COOKIE_NAME])
    assert new_sid != pending_sid
    assert db.get(StoredSession, pending_sid) is None
    assert db.get(StoredSession, new_sid) is not None

    form = spotify.token_form()
    assert form == {
        "grant_type": "authorization_code",
        "code": "abc",
        "redirect_uri": "http://testserver/auth/callback",
    }
    token_request = spotify.token_route.calls.last.request
    assert token_request.headers["authorization"].startswith("Basic ")
    assert spotify.me_route.calls.last.request.headers["authorization"] == "Bearer access-1"

    user = db.query(User).one()
    assert user.spotify_id == "spotify-user-1"
    assert user.display_name == "Test Listener"
    assert user.email == "listener@example.com"
    assert user.profile_image == "https://i.scdn.co/image/avatar"
    assert user.access_token == "access-1"
    assert user.refresh_token == "refresh-1"

    audit_row = db.query(SessionAudit).one()
    assert audit_row.user_id == user.id
    assert audit_row.login_at is not None
    assert audit_row.logout_at is None
    assert audit_row.user_agent == "testclient"
    assert audit_row.session_id == new_sid

    attempt = db.query(AuthAttempt).one()
    assert attempt.error is None
    assert attempt.user_id == user.id
    assert attempt.session_audit_id == audit_row.id


def test_second_login_updates_the_same_user(client, spotify, db):
    complete_login(client)
    spotify.token_json = {**spotify.token_json, "access_token": "access-2", "refresh_token": "refresh-2"}
    spotify.me_json = {**spotify.me_json, "display_name": "Renamed"}

    complete_login(client)

    user = db.query(User).one()
    assert user.display_name == "Renamed"
    assert user.access_token == "access-2"
    assert user.refresh_token == "refresh-2"
    assert db.query(SessionAudit).count() == 2
    assert db.query(SessionAudit).filter(SessionAudit.logout_at.is_(None)).count() == 1


def test_status_reports_logged_out_without_session(client):
    response = client.get("/auth/status")

    assert response.status_code == 200
    assert response.json() == {"isLoggedIn": False}


def test_status_reports_user_after_login(client, spotify):
    complete_login(client)

    body = client.get("/auth/status").json()

    assert body["isLoggedIn"] is True
    assert body["user"] == {
        "id": "spotify-user-1",
        "display_name": "Test Listener",
        "profile_image": "https://i.scdn.co/image/avatar",
    }
    assert len(body["csrfToken"]) == 64
    assert body["token_expires_at"]


def test_status_destroys_session_once_token_expired(client, spotify, frozen_clock, settings, db):
    complete_login(client)
    sid = _sid(settings, client.cookies[COOKIE_NAME])
    frozen_clock.advance(seconds=3601)

    body = client.get("/auth/status").json()

    assert body == {"isLoggedIn": False}
    assert db.get(StoredSession, sid) is None
    audit_row = db.query(SessionAudit).one()
    assert audit_row.logout_at == frozen_clock.now.isoformat()
    assert audit_row.session_duration == 3601.0


def test_status_trusts_token_store_over_stale_mirror(client, spotify, frozen_clock, db):
    complete_login(client)
    frozen_clock.advance(seconds=3601)
    refreshed_until = frozen_clock.now + timedelta(hours=1)
    user = db.query(User).one()
    user.token_expires_at = refreshed_until.isoformat()
    db.commit()

    body = client.get("/auth/status").json()

    assert body["isLoggedIn"] is True
    assert body["token_expires_at"] == refreshed_until.isoformat()


def test_status_destroys_session_when_user_removed(client, spotify, db):
    complete_login(client)
    db.query(User).delete()
    db.commit()

    assert client.get("/auth/status").json() == {"isLoggedIn": False}
