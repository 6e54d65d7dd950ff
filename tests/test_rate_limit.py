import pytest
from fastapi import HTTPException
from redis.exceptions import ConnectionError as RedisConnectionError

from otp_auth import redis_client
from otp_auth.services import rate_limit

pytestmark = pytest.mark.asyncio


class CounterRedis:
    """Just the INCR/EXPIRE/TTL surface the limiter touches."""

    def __init__(self):
        self.counts = {}
        self.ttls = {}

    async def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds

    async def ttl(self, key):
        return self.ttls.get(key, -1)


class FakeRequest:
    def __init__(self, ip="10.0.0.1", forwarded=None):
        self.headers = {"x-forwarded-for": forwarded} if forwarded else {}
        self.client = type("C", (), {"host": ip})()


@pytest.fixture
def fake_redis(monkeypatch):
    r = CounterRedis()
    monkeypatch.setattr(redis_client, "redis", r)
    monkeypatch.setattr(rate_limit.S, "RL_ENABLED", True)
    return r


async def test_request_limit_trips_after_threshold(fake_redis):
    limit = rate_limit.S.RL_OTP_REQ_PER_IP_10S
    for _ in range(limit):
        await rate_limit.limit_otp_request(FakeRequest())
    with pytest.raises(HTTPException) as exc:
        await rate_limit.limit_otp_request(FakeRequest())
    assert exc.value.status_code == 429
    assert exc.value.headers["Retry-After"] == "10"
    assert fake_redis.ttls["rl:otp:req:ip:10.0.0.1"] == 10


async def test_buckets_are_per_ip_and_per_kind(fake_redis):
    limit = rate_limit.S.RL_OTP_REQ_PER_IP_10S
    for _ in range(limit):
        await rate_limit.limit_otp_request(FakeRequest(ip="10.0.0.1"))
    # other ip and verify bucket are untouched
    await rate_limit.limit_otp_request(FakeRequest(ip="10.0.0.2"))
    await rate_limit.limit_otp_verify(FakeRequest(ip="10.0.0.1"))


async def test_forwarded_for_first_hop_wins(fake_redis):
    await rate_limit.limit_otp_verify(FakeRequest(forwarded="203.0.113.7, 10.0.0.1"))
    assert "rl:otp:verify:ip:203.0.113.7" in fake_redis.counts


async def test_disabled_limiter_never_touches_redis(fake_redis, monkeypatch):
    monkeypatch.setattr(rate_limit.S, "RL_ENABLED", False)
    for _ in range(50):
        await rate_limit.limit_otp_request(FakeRequest())
    assert fake_redis.counts == {}


class DownRedis:
    async def incr(self, key):
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")


async def test_redis_outage_lets_requests_through(monkeypatch, caplog):
    monkeypatch.setattr(redis_client, "redis", DownRedis())
    monkeypatch.setattr(rate_limit.S, "RL_ENABLED", True)

    for _ in range(rate_limit.S.RL_OTP_REQ_PER_IP_10S + 3):
        await rate_limit.limit_otp_request(FakeRequest())
    await rate_limit.limit_otp_verify(FakeRequest())
    assert any("rate limiter unavailable" in r.getMessage() for r in caplog.records)
