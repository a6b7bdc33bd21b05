from unittest.mock import Mock

import pytest
from fastapi import HTTPException

from rate_limiter import RateLimiter, client_key, enforce_rate_limit


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def make_request(host="10.0.0.1", forwarded=None, limiter=None):
    request = Mock()
    request.headers = {"x-forwarded-for": forwarded} if forwarded else {}
    request.client = Mock(host=host) if host else None
    request.url.path = "/api/send"
    request.app.state.rate_limiter = limiter
    return request


def test_allows_requests_up_to_the_limit(clock):
    limiter = RateLimiter(max_requests=3, window_seconds=60, clock=clock)

    assert [limiter.check_rate_limit("1.2.3.4") for _ in range(4)] == [True, True, True, False]
    assert limiter.check_rate_limit("5.6.7.8") is True


def test_window_slides(clock):
    limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
    limiter.check_rate_limit("ip")
    clock.now += 30
    limiter.check_rate_limit("ip")

    assert limiter.check_rate_limit("ip") is False
    assert limiter.retry_after("ip") == 30

    clock.now += 30
    assert limiter.check_rate_limit("ip") is True
    assert limiter.check_rate_limit("ip") is False


def test_retry_after_is_zero_under_the_limit(clock):
    limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
    limiter.check_rate_limit("ip")

    assert limiter.retry_after("ip") == 0


def test_expired_keys_are_dropped(clock):
    limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock)
    limiter.check_rate_limit("a")
    clock.now += 61

    limiter.check_rate_limit("b")
    limiter.retry_after("a")

    assert "a" not in limiter.requests
    assert list(limiter.requests) == ["b"]


def test_client_key_prefers_last_forwarded_hop():
    assert client_key(make_request(forwarded="203.0.113.9, 198.51.100.7")) == "198.51.100.7"
    assert client_key(make_request(host="10.0.0.2")) == "10.0.0.2"
    assert client_key(make_request(host=None)) == "unknown"


@pytest.mark.asyncio
async def test_dependency_raises_429_with_retry_after(clock):
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
    request = make_request(limiter=limiter)

    await enforce_rate_limit(request)
    with pytest.raises(HTTPException) as excinfo:
        await enforce_rate_limit(request)

    assert excinfo.value.status_code == 429
    assert excinfo.value.headers == {"Retry-After": "60"}


@pytest.mark.asyncio
async def test_dependency_is_a_no_op_without_a_limiter():
    await enforce_rate_limit(make_request(limiter=None))
