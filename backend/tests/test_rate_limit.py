from fastapi.testclient import TestClient
import pytest

from conftest import make_settings
from zenchat.main import create_app
from zenchat.services.rate_limit import RateLimiter


def _clock():
    clock = [0.0]
    return clock, lambda: clock[0]


def test_two_hundredth_request_passes_and_next_is_denied():
    clock, now_fn = _clock()
    limiter = RateLimiter(max_requests=200, window_seconds=60.0, now_fn=now_fn)

    decisions = []
    for i in range(201):
        clock[0] = i * 0.1
        decisions.append(limiter.check("10.0.0.1"))

    assert all(d.allowed for d in decisions[:200])
    assert not decisions[200].allowed
    assert decisions[200].retry_after == pytest.approx(40.0)


def test_window_slides_forward():
    clock, now_fn = _clock()
    limiter = RateLimiter(max_requests=2, window_seconds=10.0, now_fn=now_fn)

    assert limiter.check("a").allowed
    clock[0] = 5.0
    assert limiter.check("a").allowed
    assert not limiter.check("a").allowed

    clock[0] = 10.5
    assert limiter.check("a").allowed
    assert not limiter.check("a").allowed


def test_addresses_are_limited_independently():
    _, now_fn = _clock()
    limiter = RateLimiter(max_requests=1, window_seconds=60.0, now_fn=now_fn)

    assert limiter.check("10.0.0.1").allowed
    assert limiter.check("10.0.0.2").allowed
    assert not limiter.check("10.0.0.1").allowed


def test_disabled_limiter_always_allows():
    limiter = RateLimiter(max_requests=0, window_seconds=60.0)

    assert all(limiter.check("a").allowed for _ in range(500))


def test_prune_drops_idle_addresses():
    clock, now_fn = _clock()
    limiter = RateLimiter(max_requests=5, window_seconds=10.0, now_fn=now_fn)
    limiter.check("a")
    limiter.check("b")

    clock[0] = 11.0
    assert limiter.prune() == 2
    assert limiter.tracked_keys() == 0


def test_http_requests_beyond_limit_get_rate_limit_error(session_factory):
    app = create_app(make_settings(rate_limit_max_requests=3, rate_limit_window_ms=60_000), session_factory)
    client = TestClient(app)

    statuses = [client.get("/health").status_code for _ in range(3)]
    denied = client.get("/health")

    assert statuses == [200, 200, 200]
    assert denied.status_code == 429
    body = denied.json()
    assert body["kind"] == "rate_limit_exceeded"
    assert body["limit"] == 3
    assert body["window_ms"] == 60_000
    assert body["message"] == "You exceeded the request limit. Allowed 3 requests per 1 minute."
    assert int(denied.headers["retry-after"]) >= 1


def test_rate_limit_runs_before_authentication(session_factory):
    app = create_app(make_settings(rate_limit_max_requests=1), session_factory)
    client = TestClient(app)

    first = client.post("/auth/login", json={"identifier": "x", "password": "y"})
    second = client.post("/auth/login", json={"identifier": "x", "password": "y"})

    assert first.status_code == 401
    assert second.status_code == 429


def test_forwarded_header_does_not_reset_the_limit(session_factory):
    app = create_app(make_settings(rate_limit_max_requests=2), session_factory)
    client = TestClient(app)

    statuses = [
        client.get("/health", headers={"X-Forwarded-For": f"203.0.113.{i}"}).status_code
        for i in range(3)
    ]

    assert statuses == [200, 200, 429]
