"""
Token buckets, keyed limiters and the two-layer LLM limiter
"""
import random

import pytest

from ntpu_assistant.services.rate_limiter import GlobalLimiter, KeyedLimiter, LLMRateLimiter, TokenBucket

pytestmark = pytest.mark.unit

HOUR = 3600


class TestTokenBucket:
    def test_starts_full_and_drains(self):
        bucket = TokenBucket(3, 1, now=0)
        assert [bucket.allow(0) for _ in range(4)] == [True, True, True, False]

    def test_refill_is_capped_at_burst(self):
        bucket = TokenBucket(2, 1, now=0)
        bucket.allow(0)
        bucket.allow(0)
        assert bucket.check(100)
        assert bucket.tokens == 2

    def test_clock_going_backwards_does_not_add_tokens(self):
        bucket = TokenBucket(1, 1, now=10)
        bucket.allow(10)
        assert not bucket.check(5)


class TestKeyedLimiter:
    def test_keys_are_independent(self, clock):
        limiter = KeyedLimiter("user", 2, 0.1, clock=clock)
        assert limiter.allow("a") and limiter.allow("a")
        assert not limiter.allow("a")
        assert limiter.allow("b")

    def test_empty_key_always_allowed(self, clock):
        limiter = KeyedLimiter("user", 1, 0, clock=clock)
        assert all(limiter.allow("") for _ in range(10))
        assert limiter.active_count() == 0

    def test_refill_over_time(self, clock):
        limiter = KeyedLimiter("user", 1, 0.1, clock=clock)
        assert limiter.allow("a")
        assert not limiter.allow("a")
        clock.advance(10)
        assert limiter.allow("a")

    def test_remaining_does_not_consume(self, clock):
        limiter = KeyedLimiter("user", 3, 0.5, clock=clock)
        assert limiter.remaining("a") == 3
        assert limiter.active_count() == 0
        limiter.allow("a")
        limiter.allow("a")
        assert limiter.remaining("a") == 1
        assert limiter.remaining("a") == 1
        clock.advance(3)
        assert limiter.remaining("a") == 2

    def test_admitted_calls_bounded_by_burst_plus_refill(self, clock):
        burst, rate = 5, 0.5
        limiter = KeyedLimiter("user", burst, rate, clock=clock)
        rng = random.Random(42)
        admitted = 0
        elapsed = 0.0
        for _ in range(500):
            step = rng.uniform(0, 0.5)
            clock.advance(step)
            elapsed += step
            if limiter.allow("k"):
                admitted += 1
        assert admitted <= burst + rate * elapsed + 1

    def test_cleanup_reaps_full_buckets(self, clock, metrics):
        limiter = KeyedLimiter("user", 2, 1, clock=clock, metrics=metrics)
        limiter.allow("a")
        limiter.allow("b")
        assert limiter.cleanup() == 0
        clock.advance(5)
        assert limiter.cleanup() == 2
        assert limiter.active_count() == 0
        assert metrics.registry.get_sample_value(
            "ntpu_rate_limiter_active_keys", {"limiter": "user"}) == 0

    def test_records_metrics(self, clock, metrics):
        limiter = KeyedLimiter("user", 1, 0, clock=clock, metrics=metrics)
        limiter.allow("a")
        limiter.allow("a")
        assert metrics.registry.get_sample_value(
            "ntpu_rate_limiter_allowed_total", {"limiter": "user"}) == 1
        assert metrics.registry.get_sample_value(
            "ntpu_rate_limiter_dropped_total", {"limiter": "user"}) == 1


class TestLLMRateLimiter:
    def test_hourly_then_daily_layers(self, clock):
        limiter = LLMRateLimiter(burst=3, refill_per_hour=1, daily_limit=5, clock=clock)
        results = [limiter.check("u") for _ in range(5)]
        assert results == [None, None, None, "hourly", "hourly"]

        clock.advance(HOUR)
        assert limiter.check("u") is None
        assert limiter.daily_remaining("u") == 1

        clock.advance(HOUR)
        assert limiter.check("u") is None

        clock.advance(HOUR)
        assert limiter.check("u") == "daily"
        assert limiter.daily_remaining("u") == 0

    def test_rejections_do_not_consume_daily_quota(self, clock):
        limiter = LLMRateLimiter(burst=1, refill_per_hour=1, daily_limit=2, clock=clock)
        assert limiter.allow("u")
        for _ in range(10):
            assert limiter.check("u") == "hourly"
        assert limiter.daily_remaining("u") == 1

    def test_daily_counter_resets_at_local_midnight(self, clock):
        limiter = LLMRateLimiter(burst=10, refill_per_hour=100, daily_limit=1, clock=clock)
        assert limiter.allow("u")
        assert limiter.check("u") == "daily"
        clock.advance(12 * HOUR)  # 2024-10-02 00:00
        assert limiter.allow("u")

    def test_keys_with_usage_today_are_not_reaped(self, clock):
        limiter = LLMRateLimiter(burst=2, refill_per_hour=3600, daily_limit=1, clock=clock)
        limiter.allow("u")
        clock.advance(60)
        assert limiter.cleanup() == 0
        assert limiter.check("u") == "daily"

    def test_zero_daily_limit_disables_daily_layer(self, clock):
        limiter = LLMRateLimiter(burst=100, refill_per_hour=0, daily_limit=0, clock=clock)
        assert all(limiter.allow("u") for _ in range(50))
        assert limiter.daily_remaining("u") == -1


class TestGlobalLimiter:
    def test_rps(self, clock, metrics):
        limiter = GlobalLimiter(2, clock=clock, metrics=metrics)
        assert [limiter.allow() for _ in range(3)] == [True, True, False]
        clock.advance(0.5)
        assert limiter.allow()
        assert metrics.registry.get_sample_value(
            "ntpu_rate_limiter_dropped_total", {"limiter": "global"}) == 1


@pytest.mark.asyncio
async def test_cleanup_task_start_and_stop(clock):
    limiter = KeyedLimiter("user", 1, 1, clock=clock)
    limiter.start(3600)
    limiter.start(3600)
    await limiter.stop()
    await limiter.stop()
