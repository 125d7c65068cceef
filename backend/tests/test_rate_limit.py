import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from adreel.errors import RateLimited
from adreel.services.rate_limit import RateLimit, RateLimiter
from adreel.settings import get_settings


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakePipeline:
    def __init__(self, store, fail):
        self.store = store
        self.fail = fail
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def incr(self, key):
        self.ops.append(("incr", key))

    def expire(self, key, ttl):
        self.ops.append(("expire", key, ttl))

    async def execute(self):
        if self.fail:
            raise RedisConnectionError("connection refused")
        results = []
        for op in self.ops:
            if op[0] == "incr":
                self.store[op[1]] = self.store.get(op[1], 0) + 1
                results.append(self.store[op[1]])
            else:
                self.store.setdefault("ttl", {})[op[1]] = op[2]
                results.append(True)
        return results


class FakeRedis:
    def __init__(self, fail=False):
        self.store = {}
        self.fail = fail

    def pipeline(self, transaction=True):
        return FakePipeline(self.store, self.fail)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def limiter(clock):
    return RateLimiter({"videos.create": RateLimit(interval_sec=3600, max_requests=2)}, clock=clock)


class TestLocalWindows:
    async def test_limit_within_window(self, limiter):
        first = await limiter.check("owner-1", "videos.create")
        second = await limiter.check("owner-1", "videos.create")
        third = await limiter.check("owner-1", "videos.create")

        assert (first.allowed, first.remaining) == (True, 1)
        assert (second.allowed, second.remaining) == (True, 0)
        assert not third.allowed
        assert third.reset_sec == 3600

    async def test_window_restarts(self, limiter, clock):
        await limiter.check("owner-1", "videos.create")
        await limiter.check("owner-1", "videos.create")
        clock.now += 3600

        assert (await limiter.check("owner-1", "videos.create")).allowed

    async def test_owners_and_endpoints_are_separate(self, limiter):
        await limiter.check("owner-1", "videos.create")
        await limiter.check("owner-1", "videos.create")

        assert (await limiter.check("owner-2", "videos.create")).allowed
        assert (await limiter.check("owner-1", "posts.create")).allowed

    async def test_unknown_endpoint_uses_default(self, limiter):
        result = await limiter.check("owner-1", "products.sync")
        assert result.limit == 60

    async def test_hit_raises_when_used_up(self, limiter, clock):
        await limiter.hit("owner-1", "videos.create")
        await limiter.hit("owner-1", "videos.create")
        clock.now += 600

        with pytest.raises(RateLimited) as err:
            await limiter.hit("owner-1", "videos.create")
        assert err.value.retry_after == 3000
        assert err.value.headers == {"Retry-After": "3000"}
        assert err.value.to_dict()["code"] == "RATE_LIMITED"

    async def test_cleanup_drops_ended_windows(self, limiter, clock):
        await limiter.check("owner-1", "videos.create")
        await limiter.check("owner-1", "products.sync")
        clock.now += 120

        assert limiter.cleanup() == 1
        assert limiter.cleanup() == 0


class TestRedisWindows:
    @pytest.fixture(autouse=True)
    def redis_backend(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "rate_limit_redis_enabled", True)

    async def test_counts_in_shared_key(self, clock):
        client = FakeRedis()
        limiter = RateLimiter({"posts.create": RateLimit(interval_sec=60, max_requests=1)},
                              redis_client=client, clock=clock)

        assert (await limiter.check("owner-1", "posts.create")).allowed
        blocked = await limiter.check("owner-1", "posts.create")

        assert not blocked.allowed
        key = f"rl:posts.create:owner-1:{int(clock.now // 60)}"
        assert client.store[key] == 2
        assert client.store["ttl"][key] == 60

    async def test_redis_failure_lets_requests_through(self, clock):
        limiter = RateLimiter({"posts.create": RateLimit(interval_sec=60, max_requests=1)},
                              redis_client=FakeRedis(fail=True), clock=clock)

        assert (await limiter.check("owner-1", "posts.create")).allowed
        assert (await limiter.check("owner-1", "posts.create")).allowed
