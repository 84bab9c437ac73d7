"""Fixed-window rate limiter."""

from app.middleware.rate_limit import RateLimiter


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def incr(self, key):
        self.commands.append(("incr", key))

    def expire(self, key, seconds):
        self.commands.append(("expire", key, seconds))

    async def execute(self):
        results = []
        for command in self.commands:
            if command[0] == "incr":
                self.store[command[1]] = self.store.get(command[1], 0) + 1
                results.append(self.store[command[1]])
            else:
                self.store.setdefault("ttl", {})[command[1]] = command[2]
                results.append(True)
        return results


class FakeRedis:
    def __init__(self):
        self.store = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self.store)


async def test_limit_within_window():
    limiter = RateLimiter(FakeRedis(), rate_limit=2)
    now = 1_800_000_030

    first = await limiter.hit("integration-key:fuk_1", now=now)
    second = await limiter.hit("integration-key:fuk_1", now=now)
    third = await limiter.hit("integration-key:fuk_1", now=now)

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert third.retry_after == 30
    assert third.headers()["Retry-After"] == "30"
    assert "Retry-After" not in first.headers()


async def test_new_window_and_other_callers_start_fresh():
    redis = FakeRedis()
    limiter = RateLimiter(redis, rate_limit=1)
    now = 1_800_000_000

    assert (await limiter.hit("ip:1.2.3.4", now=now)).allowed
    assert not (await limiter.hit("ip:1.2.3.4", now=now + 59)).allowed
    assert (await limiter.hit("ip:5.6.7.8", now=now + 59)).allowed
    assert (await limiter.hit("ip:1.2.3.4", now=now + 60)).allowed
    assert all(ttl == 65 for ttl in redis.store["ttl"].values())
