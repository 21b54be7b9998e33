"""Sliding-window delivery rate limiting."""

from typing import Optional

import structlog

from src.models.notification import DeliveryStats, RateLimitConfig
from src.services.clock import DAY_MS, HOUR_MS, Clock, now_ms

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Caps deliveries per hour and per day and enforces a minimum spacing.

    The delivery log is pruned to the trailing 24 hours on every check.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        stats: Optional[DeliveryStats] = None,
        clock: Clock = now_ms,
    ):
        self.config = config or RateLimitConfig()
        self.stats = stats or DeliveryStats()
        self._clock = clock

    def _prune(self, now: int) -> None:
        one_day_ago = now - DAY_MS
        self.stats.timestamps = [ts for ts in self.stats.timestamps if ts > one_day_ago]

    def is_within_limit(self, now: Optional[int] = None) -> bool:
        """Check whether a delivery at ``now`` would respect every limit."""
        now = self._clock() if now is None else now
        self._prune(now)

        if now - self.stats.last_delivery_timestamp < self.config.min_interval_ms:
            logger.info("rate_limited", reason="min_interval")
            return False

        one_hour_ago = now - HOUR_MS
        hour_count = sum(1 for ts in self.stats.timestamps if ts > one_hour_ago)
        if hour_count >= self.config.max_per_hour:
            logger.info("rate_limited", reason="hourly_limit", count=hour_count)
            return False

        if len(self.stats.timestamps) >= self.config.max_per_day:
            logger.info("rate_limited", reason="daily_limit", count=len(self.stats.timestamps))
            return False

        return True

    def record_delivery(self, now: Optional[int] = None) -> None:
        now = self._clock() if now is None else now
        self.stats.last_delivery_timestamp = now
        self.stats.timestamps.append(now)

    def set_config(self, **changes) -> RateLimitConfig:
        """Apply a partial update, e.g. ``set_config(max_per_hour=3)``."""
        self.config = RateLimitConfig.model_validate({**self.config.model_dump(), **changes})
        return self.config

    def get_stats(self) -> DeliveryStats:
        """Snapshot of the delivery log with derived hour/day counts."""
        now = self._clock()
        self._prune(now)
        one_hour_ago = now - HOUR_MS
        return DeliveryStats(
            last_delivery_timestamp=self.stats.last_delivery_timestamp,
            timestamps=list(self.stats.timestamps),
            last_hour_count=sum(1 for ts in self.stats.timestamps if ts > one_hour_ago),
            last_day_count=len(self.stats.timestamps),
        )
