"""Redis-backed sliding window rate limiter shared across service replicas."""

from __future__ import annotations

import time
import uuid
from typing import Callable, Final

from redis import Redis
from redis.exceptions import ResponseError, WatchError


class RedisSlidingWindowRateLimiter:
    """Sliding window limiter keeping one sorted-set member per accepted attempt.

    Members are scored by their arrival time in milliseconds. An attempt is
    accepted while fewer than ``max_requests`` members are younger than the
    window, matching :class:`SlidingWindowRateLimiter` for a single process.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local now_ms = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local max_requests = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
    if redis.call('ZCARD', key) >= max_requests then
        return 0
    end
    redis.call('ZADD', key, now_ms, ARGV[4])
    redis.call('PEXPIRE', key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "auth-rate",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._clock = clock
        self._script = client.register_script(self._LUA_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def allow(self, key: str) -> bool:
        """Return ``True`` when ``key`` is still within the shared rate limit."""
        now_ms = int(self._clock() * 1000)
        redis_key = self._key(key)
        member = uuid.uuid4().hex
        try:
            result = self._script(
                keys=[redis_key], args=[now_ms, self._window_ms, self._max_requests, member]
            )
        except ResponseError as exc:
            if "unknown command" not in str(exc).lower():
                raise
            return self._allow_with_transaction(redis_key, now_ms, member)
        return int(result) == 1

    def reset(self, key: str) -> None:
        """Forget recorded attempts for ``key``."""
        self._client.delete(self._key(key))

    def _allow_with_transaction(self, redis_key: str, now_ms: int, member: str) -> bool:
        """Optimistic WATCH/MULTI variant for servers with scripting disabled."""
        window_start = now_ms - self._window_ms
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(redis_key)
                    live = pipe.zcount(redis_key, f"({window_start}", "+inf")
                    if live >= self._max_requests:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.zremrangebyscore(redis_key, "-inf", window_start)
                    pipe.zadd(redis_key, {member: now_ms})
                    pipe.pexpire(redis_key, self._window_ms)
                    pipe.execute()
                    return True
                except WatchError:
                    continue
