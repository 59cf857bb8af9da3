import pytest
from fastapi import HTTPException
from starlette.requests import Request

from api.rate_limit import SlidingWindowRateLimiter, client_ip, parse_limit


def make_request(headers=None, client=("10.0.0.1", 1234)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/v1/payments/status/DR_1",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_parse_limit():
    assert parse_limit("5/30", (1, 1)) == (5, 30.0)
    assert parse_limit("garbage", (1, 1)) == (1, 1)
    assert parse_limit("0/60", (10, 60)) == (10, 60)


def test_client_ip_uses_forwarded_header_behind_trusted_proxy():
    assert client_ip(make_request({"X-Forwarded-For": "1.2.3.4, 10.0.0.2"}), trust_proxy=True) == "1.2.3.4"
    assert client_ip(make_request({"X-Real-IP": "5.6.7.8"}), trust_proxy=True) == "5.6.7.8"
    assert client_ip(make_request(), trust_proxy=True) == "10.0.0.1"
    assert client_ip(make_request(client=None), trust_proxy=True) == "unknown"


def test_client_ip_ignores_forwarded_headers_by_default():
    headers = {"X-Forwarded-For": "1.2.3.4", "X-Real-IP": "5.6.7.8", "CF-Connecting-IP": "9.9.9.9"}
    assert client_ip(make_request(headers)) == "10.0.0.1"
    assert client_ip(make_request(headers), trust_proxy=False) == "10.0.0.1"


async def test_sliding_window_blocks_then_recovers():
    now = [0.0]
    limiter = SlidingWindowRateLimiter("test", 2, 60, clock=lambda: now[0])

    assert await limiter.hit("a") is None
    assert await limiter.hit("a") is None
    assert await limiter.hit("a") == pytest.approx(60.0)
    assert await limiter.hit("b") is None

    now[0] = 60.5
    assert await limiter.hit("a") is None


async def test_dependency_raises_429_with_retry_after():
    limiter = SlidingWindowRateLimiter("test", 1, 60, message="slow down")
    request = make_request()

    await limiter(request)
    with pytest.raises(HTTPException) as exc:
        await limiter(request)

    assert exc.value.status_code == 429
    assert exc.value.detail == "slow down"
    assert int(exc.value.headers["Retry-After"]) >= 1
