"""Unit tests for the sliding-window rate limiter."""

import pytest
from pydantic import ValidationError

from src.models.notification import DeliveryStats, RateLimitConfig
from src.services.rate_limiter import RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


class TestIsWithinLimit:
    def test_fresh_limiter_allows(self, limiter):
        assert limiter.is_within_limit() is True

    def test_min_interval(self, limiter, clock):
        limiter.record_delivery()

        clock.advance(minutes=1)
        assert limiter.is_within_limit() is False

        clock.advance(minutes=5)
        assert limiter.is_within_limit() is True

    def test_hourly_cap(self, clock):
        limiter = RateLimiter(RateLimitConfig(max_per_hour=2, min_interval_ms=0), clock=clock)
        limiter.record_delivery()
        clock.advance(minutes=1)
        limiter.record_delivery()
        clock.advance(minutes=1)

        assert limiter.is_within_limit() is False

        clock.advance(minutes=60)
        assert limiter.is_within_limit() is True

    def test_daily_cap(self, clock):
        config = RateLimitConfig(max_per_hour=10, max_per_day=3, min_interval_ms=0)
        limiter = RateLimiter(config, clock=clock)
        for _ in range(3):
            limiter.record_delivery()
            clock.advance(hours=2)

        assert limiter.is_within_limit() is False

        clock.advance(hours=25)
        assert limiter.is_within_limit() is True
        assert limiter.stats.timestamps == []

    def test_explicit_now(self, limiter, clock):
        limiter.record_delivery(clock())
        assert limiter.is_within_limit(clock() + 10 * 60 * 1000) is True


class TestConfigAndStats:
    def test_partial_config_update(self, limiter):
        config = limiter.set_config(max_per_hour=3)
        assert config.max_per_hour == 3
        assert config.max_per_day == 20
        assert config.min_interval_ms == 300000

    def test_invalid_config_rejected(self, limiter):
        with pytest.raises(ValidationError):
            limiter.set_config(max_per_day=0)
        assert limiter.config.max_per_day == 20

    def test_stats_counts(self, clock):
        limiter = RateLimiter(RateLimitConfig(min_interval_ms=0), clock=clock)
        limiter.record_delivery()
        clock.advance(hours=2)
        limiter.record_delivery()

        stats = limiter.get_stats()

        assert stats.last_hour_count == 1
        assert stats.last_day_count == 2
        assert stats.last_delivery_timestamp == clock()

    def test_restored_stats_are_honored(self, clock):
        stats = DeliveryStats(last_delivery_timestamp=clock(), timestamps=[clock()])
        limiter = RateLimiter(stats=stats, clock=clock)
        assert limiter.is_within_limit() is False
