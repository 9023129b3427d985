from conftest import complete_login

from app.api import deps
from app.services.rate_limit import RateLimiter


def test_limiter_blocks_after_max_attempts(frozen_clock):
    limiter = RateLimiter(max_attempts=3, window_seconds=60)

    results = [limiter.check_and_increment("10.0.0.1") for _ in range(4)]

    assert results == [(True, 2), (True, 1), (True, 0), (False, 0)]
    assert limiter.check_and_increment("10.0.0.2") == (True, 2)


def test_limiter_window_slides(frozen_clock):
    limiter = RateLimiter(max_attempts=2, window_seconds=60)
    limiter.check_and_increment("ip")
    frozen_clock.advance(seconds=30)
    limiter.check_and_increment("ip")

    assert limiter.check_and_increment("ip") == (False, 0)
    frozen_clock.advance(seconds=31)
    assert limiter.check_and_increment("ip") == (True, 0)


def test_limiter_reset(frozen_clock):
    limiter = RateLimiter(max_attempts=1, window_seconds=60)
    limiter.check_and_increment("ip")

    limiter.reset("ip")

    assert limiter.check_and_increment("ip") == (True, 0)


def test_login_endpoint_is_throttled_per_ip(app, client):
    limiter = RateLimiter(max_attempts=2, window_seconds=900)
    app.dependency_overrides[deps.get_auth_rate_limiter] = lambda: limiter

    assert client.get("/auth/login", follow_redirects=False).status_code == 302
    assert client.get("/auth/login", follow_redirects=False).status_code == 302
    response = client.get("/auth/login", follow_redirects=False)

    assert response.status_code == 429
    assert response.json() == {"error": "Too many requests, please try again later"}


def test_spoofed_forwarded_for_shares_the_peer_limit(app, client):
    limiter = RateLimiter(max_attempts=1, window_seconds=900)
    app.dependency_overrides[deps.get_auth_rate_limiter] = lambda: limiter

    statuses = {
        client.get("/auth/login", headers={"X-Forwarded-For": f"10.0.0.{i}"}, follow_redirects=False).status_code
        for i in range(20)
    }

    assert statuses == {302, 429}
    assert len(limiter) == 1


def test_forwarded_for_used_behind_trusted_proxy(app, client, monkeypatch):
    monkeypatch.setattr(deps.settings, "trust_forwarded_for", True)
    limiter = RateLimiter(max_attempts=1, window_seconds=900)
    app.dependency_overrides[deps.get_auth_rate_limiter] = lambda: limiter

    first = client.get("/auth/login", headers={"X-Forwarded-For": "203.0.113.7"}, follow_redirects=False)
    second = client.get("/auth/login", headers={"X-Forwarded-For": "203.0.113.8, 10.0.0.1"}, follow_redirects=False)
    repeat = client.get("/auth/login", headers={"X-Forwarded-For": "203.0.113.7"}, follow_redirects=False)

    assert [first.status_code, second.status_code, repeat.status_code] == [302, 302, 429]


def test_limiter_forgets_idle_identifiers(frozen_clock):
    limiter = RateLimiter(max_attempts=1, window_seconds=60)
    for i in range(20):
        limiter.check_and_increment(f"10.0.0.{i}")
    assert len(limiter) == 20

    frozen_clock.advance(seconds=61)
    limiter.check_and_increment("10.0.0.99")

    assert len(limiter) == 1


def test_authenticated_callers_skip_the_limit(app, client, spotify):
    limiter = RateLimiter(max_attempts=2, window_seconds=900)
    app.dependency_overrides[deps.get_auth_rate_limiter] = lambda: limiter
    complete_login(client)

    responses = [client.get("/auth/login", follow_redirects=False) for _ in range(3)]

    assert [r.status_code for r in responses] == [302, 302, 302]
