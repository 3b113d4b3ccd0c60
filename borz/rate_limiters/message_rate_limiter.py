from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import redis

from borz.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    wait_seconds: int = 0

    @property
    def message(self) -> str:
        return f"Too many messages. Please wait {self.wait_seconds} seconds before trying again."


# Sliding-window limit on message sends per user, kept in a Redis sorted set
class MessageRateLimiter:
    def __init__(self, client: "redis.Redis", max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str, max_requests: int = 30) -> "MessageRateLimiter":
        return cls(redis.from_url(redis_url, decode_responses=True), max_requests=max_requests)

    def check(self, user_id: str) -> RateLimitDecision:
        key = f"message_rate:{user_id}"
        now_ts = datetime.now(timezone.utc).timestamp()
        min_ts = now_ts - self.window_seconds

        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, min_ts)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.expire(key, self.window_seconds + 5)
            _, count, oldest, _ = pipe.execute()

            if int(count) >= self.max_requests:
                if not oldest:
                    return RateLimitDecision(allowed=False, wait_seconds=self.window_seconds)
                oldest_ts = float(oldest[0][1])
                wait_s = max(1, int((oldest_ts + self.window_seconds) - now_ts))
                return RateLimitDecision(allowed=False, wait_seconds=wait_s)

            # Unique member so two sends in the same instant both count
            self._client.zadd(key, {f"{now_ts}:{uuid.uuid4().hex[:8]}": now_ts})
            self._client.expire(key, self.window_seconds + 5)
            return RateLimitDecision(allowed=True)
        # Redis down or unreachable: never block chatting on the limiter
        except redis.RedisError as e:
            logger.warning("rate_limit.unavailable: %s", e.__class__.__name__)
            return RateLimitDecision(allowed=True)


# None when REDIS_URL is unset: sends are then unlimited
def get_message_rate_limiter(settings: Settings) -> Optional[MessageRateLimiter]:
    if not settings.redis_url or settings.send_rate_limit_per_minute <= 0:
        return None
    return MessageRateLimiter.from_url(settings.redis_url, max_requests=settings.send_rate_limit_per_minute)
