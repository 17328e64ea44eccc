import functools
import logging
import time
from typing import Dict, Tuple
from fastapi import HTTPException, Request
from app.infra.redis import get_redis
from app.config.settings import config
from app.utils.locale import get_locale
from app.i18n import i18n

logger = logging.getLogger(__name__)

class RedisRateLimiter:
    """
    Fixed-window rate limiter keyed by client IP and path.
    Uses a Redis Lua script; falls back to an in-process window without Redis.
    """

    def __init__(self):
        self.lua_script = """
        local key = KEYS[1]
        local limit = tonumber(ARGV[1])
        local window = tonumber(ARGV[2])

        local current = redis.call('INCR', key)
        if current == 1 then
            redis.call('EXPIRE', key, window)
        end

        if current > limit then
            local ttl = redis.call('TTL', key)
            return {0, ttl}
        end

        return {1, 0}
        """
        # key -> (count, reset_at)
        self._local: Dict[str, Tuple[int, float]] = {}
        self._next_prune = 0.0

    @property
    def max_requests(self) -> int:
        return config.rate_limit.max_requests

    @property
    def window_seconds(self) -> int:
        return config.rate_limit.window_seconds

    def _prune_local(self, now: float) -> None:
        """Drop windows that have already expired"""
        expired = [key for key, (_, reset_at) in self._local.items() if now > reset_at]
        for key in expired:
            del self._local[key]

    def _check_local(self, key: str) -> Tuple[bool, int]:
        now = time.monotonic()
        if now >= self._next_prune:
            self._prune_local(now)
            self._next_prune = now + self.window_seconds
        count, reset_at = self._local.get(key, (0, now + self.window_seconds))
        if now > reset_at:
            count, reset_at = 0, now + self.window_seconds
        count += 1
        self._local[key] = (count, reset_at)

        if count > self.max_requests:
            return False, max(1, int(reset_at - now))
        return True, 0

    async def _check_redis(self, redis, key: str) -> Tuple[bool, int]:
        allowed, ttl = await redis.eval(
            self.lua_script,
            1,
            key,
            self.max_requests,
            self.window_seconds
        )
        return bool(allowed), int(ttl)

    def reset(self) -> None:
        self._local.clear()
        self._next_prune = 0.0

    async def __call__(self, request: Request):
        if not config.rate_limit.enabled:
            return True

        client_ip = request.client.host if request.client else "unknown"
        endpoint = request.url.path
        key = f"rate:{client_ip}:{endpoint}"

        redis = get_redis()
        allowed, ttl = True, 0
        if redis:
            try:
                allowed, ttl = await self._check_redis(redis, key)
            except Exception as e:
                logger.warning(f"Redis rate limit check failed, using local window: {e}")
                allowed, ttl = self._check_local(key)
        else:
            allowed, ttl = self._check_local(key)

        if not allowed:
            locale = get_locale(request.headers.get("accept-language"))
            _ = functools.partial(i18n.get, locale=locale)
            raise HTTPException(
                status_code=429,
                detail=_("error.rate_limit", seconds=ttl),
                headers={"Retry-After": str(ttl)}
            )

        return True

rate_limiter = RedisRateLimiter()
