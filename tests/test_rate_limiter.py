import redis

from borz.config import Settings
from borz.rate_limiters.message_rate_limiter import MessageRateLimiter, get_message_rate_limiter


# Sorted-set subset of the Redis API the limiter uses
class FakeRedis:
    def __init__(self):
        self.sets: dict[str, dict[str, float]] = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def zadd(self, key, mapping):
        self.sets.setdefault(key, {}).update(mapping)

    def expire(self, key, seconds):
        return True


class FakePipeline:
    def __init__(self, redis_client):
        self.redis = redis_client
        self.ops = []

    def zremrangebyscore(self, key, low, high):
        self.ops.append(("zremrangebyscore", key, low, high))

    def zcard(self, key):
        self.ops.append(("zcard", key))

    def zrange(self, key, start, end, withscores=False):
        self.ops.append(("zrange", key, start, end))

    def expire(self, key, seconds):
        self.ops.append(("expire", key))

    def execute(self):
        results = []
        for op in self.ops:
            members = self.redis.sets.setdefault(op[1], {})
            if op[0] == "zremrangebyscore":
                stale = [m for m, score in members.items() if op[2] <= score <= op[3]]
                for m in stale:
                    del members[m]
                results.append(len(stale))
            elif op[0] == "zcard":
                results.append(len(members))
            elif op[0] == "zrange":
                ordered = sorted(members.items(), key=lambda kv: kv[1])
                results.append(ordered[op[2]:op[3] + 1])
            else:
                results.append(True)
        return results


class BrokenRedis:
    def pipeline(self, transaction=True):
        raise redis.ConnectionError("redis is down")


def test_allows_up_to_the_limit_then_blocks():
    limiter = MessageRateLimiter(FakeRedis(), max_requests=3)
    decisions = [limiter.check("user-1") for _ in range(4)]
    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert 1 <= decisions[-1].wait_seconds <= 60
    assert "Please wait" in decisions[-1].message


def test_limits_are_per_user():
    limiter = MessageRateLimiter(FakeRedis(), max_requests=1)
    assert limiter.check("user-1").allowed
    assert not limiter.check("user-1").allowed
    assert limiter.check("user-2").allowed


def test_old_entries_fall_out_of_the_window():
    fake = FakeRedis()
    fake.sets["message_rate:user-1"] = {"old-1": 1.0, "old-2": 2.0}
    limiter = MessageRateLimiter(fake, max_requests=2)
    assert limiter.check("user-1").allowed


def test_fails_open_when_redis_is_unavailable():
    limiter = MessageRateLimiter(BrokenRedis(), max_requests=1)
    assert limiter.check("user-1").allowed
    assert limiter.check("user-1").allowed


def test_no_limiter_without_redis_url():
    assert get_message_rate_limiter(Settings(redis_url=None)) is None
    assert get_message_rate_limiter(Settings(redis_url="redis://localhost:6379/0", send_rate_limit_per_minute=0)) is None
