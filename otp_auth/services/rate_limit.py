from __future__ import annotations
import logging
from fastapi import HTTPException, Request, status
from redis.exceptions import RedisError
from ..config import get_settings
from .. import redis_client

S = get_settings()
log = logging.getLogger(__name__)


# ---- generic token counter (fixed window) ----
async def _hit(key: str, window_sec: int, limit: int) -> None:
    r = redis_client.redis
    try:
        count = await r.incr(key)
        if count == 1:
            await r.expire(key, window_sec)
        ttl = await r.ttl(key) if count > limit else None
    except RedisError as exc:
        # fail open: auth keeps working while redis is down
        log.warning("rate limiter unavailable, letting %s through: %s", key, exc)
        return
    if count > limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limit exceeded",
            headers={"Retry-After": str(max(ttl, 1)) if ttl and ttl > 0 else "10"},
        )


def _client_ip(req: Request) -> str:
    # prefer X-Forwarded-For (first hop), fallback to uvicorn client
    h = req.headers.get("x-forwarded-for")
    if h:
        return h.split(",")[0].strip()
    return req.client.host if req.client else "unknown"


# ---- public helpers (used as route dependencies) ----
async def limit_otp_request(request: Request) -> None:
    if not S.RL_ENABLED:
        return
    ip = _client_ip(request)
    await _hit(f"rl:otp:req:ip:{ip}", window_sec=10, limit=S.RL_OTP_REQ_PER_IP_10S)


async def limit_otp_verify(request: Request) -> None:
    if not S.RL_ENABLED:
        return
    ip = _client_ip(request)
    await _hit(f"rl:otp:verify:ip:{ip}", window_sec=10, limit=S.RL_OTP_VERIFY_PER_IP_10S)
