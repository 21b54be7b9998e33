"""Delivery scheduler: immediate-vs-queue decisions, rate limiting and the queue loop."""

import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Union

import structlog
from pydantic import ValidationError

from src.config import Settings, get_settings
from src.exceptions import InvalidConfigurationError
from src.models.notification import (
    DeliveryDecision,
    DeliveryStats,
    NotificationPayload,
    NotificationPriority,
    QueueProcessResult,
    RateLimitConfig,
    ScheduledNotification,
)
from src.models.settings import NotificationSettings
from src.services.clock import HOUR_MS, Clock, now_ms
from src.services.context_service import ContextService
from src.services.engagement_service import EngagementService
from src.services.prediction_service import PredictionService
from src.services.push_service import PushService
from src.services.rate_limiter import RateLimiter
from src.services.settings_service import NotificationSettingsService
from src.services.storage_service import (
    DELIVERY_STATS_KEY,
    QUEUE_STORAGE_KEY,
    JsonStore,
    KeyValueStore,
)

logger = structlog.get_logger(__name__)

# Minimum engagement score for delivery, per priority
DELIVERY_THRESHOLDS = {
    NotificationPriority.URGENT: 0.2,
    NotificationPriority.HIGH: 0.4,
    NotificationPriority.NORMAL: 0.5,
    NotificationPriority.LOW: 0.6,
}

# Queued items are re-scored against 90% of the fresh threshold
QUEUED_THRESHOLD_DISCOUNT = 0.9

DeliveryCallback = Callable[[NotificationPayload], Union[None, Awaitable[None]]]


def _queue_sort_key(item: ScheduledNotification) -> tuple[int, float]:
    return (item.priority.rank, -item.delivery_score)


class SchedulerService:
    """Decides when each notification is shown and drains the delivery queue.

    All queue and rate-limit state is mutated under a single asyncio lock so
    the periodic pass and host calls never interleave.
    """

    def __init__(
        self,
        store: KeyValueStore,
        prediction: PredictionService,
        context: ContextService,
        engagement: EngagementService,
        settings_service: NotificationSettingsService,
        push: PushService,
        settings: Optional[Settings] = None,
        clock: Clock = now_ms,
    ):
        self.settings = settings or get_settings()
        self.prediction = prediction
        self.context = context
        self.engagement = engagement
        self.settings_service = settings_service
        self.push = push
        self._json = JsonStore(store)
        self._clock = clock
        self._queue: list[ScheduledNotification] = []
        self._rate_limiter = RateLimiter(
            RateLimitConfig(
                max_per_hour=self.settings.rate_limit_max_per_hour,
                max_per_day=self.settings.rate_limit_max_per_day,
                min_interval_ms=self.settings.rate_limit_min_interval_ms,
            ),
            DeliveryStats(),
            clock,
        )
        self._callbacks: list[DeliveryCallback] = []
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._initialized = False

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def initialize(self) -> None:
        """Load persisted state, start the queue loop and run one pass now."""
        if self._initialized:
            logger.info("scheduler_already_initialized")
            return

        await self._load_queue()
        await self._load_delivery_stats()
        self.start()
        self._initialized = True
        logger.info("scheduler_initialized", queue_size=len(self._queue))

        await self.process_queue()

    def start(self) -> None:
        """Start the queue loop as an asyncio background task."""
        if self.is_running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("scheduler_started", interval=self.settings.queue_poll_interval_seconds)

    async def stop(self) -> None:
        """Stop the queue loop. Safe to call when it was never started."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("scheduler_stopped")

    async def cleanup(self) -> None:
        """Stop the loop, persist state and drop delivery callbacks."""
        await self.stop()
        if self._initialized:
            async with self._lock:
                await self._save_queue()
                await self._save_delivery_stats()
        self._callbacks = []
        self._initialized = False
        logger.info("scheduler_cleaned_up")

    async def _poll_loop(self) -> None:
        """Re-evaluate the queue at the configured interval."""
        interval = self.settings.queue_poll_interval_seconds

        while self._running:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

            try:
                await self.process_queue()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_poll_error", error=str(e))

    # Scheduling

    async def schedule_notification(self, payload: NotificationPayload) -> DeliveryDecision:
        """Deliver a notification now, queue it, or drop it if disabled."""
        settings = self.settings_service.get()

        if not settings.enabled:
            logger.info("notification_dropped", notification_id=payload.id, reason="disabled")
            return DeliveryDecision.DROPPED

        if not settings.is_type_enabled(payload.type):
            logger.info(
                "notification_dropped",
                notification_id=payload.id,
                reason="type_disabled",
                type=payload.type.value,
            )
            return DeliveryDecision.DROPPED

        self.engagement.track_notification_received(payload.id, payload.type.value)

        async with self._lock:
            if await self.should_deliver_immediately(payload, settings):
                await self._deliver(payload)
                decision = DeliveryDecision.DELIVERED
            else:
                await self._add_to_queue(payload)
                decision = DeliveryDecision.QUEUED

        if decision == DeliveryDecision.DELIVERED:
            await self._notify_callbacks([payload])
        return decision

    async def should_deliver_immediately(
        self,
        payload: NotificationPayload,
        settings: Optional[NotificationSettings] = None,
    ) -> bool:
        settings = settings or self.settings_service.get()

        # Urgent notifications go through unless rate limited
        if payload.priority == NotificationPriority.URGENT:
            return self._rate_limiter.is_within_limit()

        if not settings.smart_timing:
            return self._rate_limiter.is_within_limit()

        score = await self.prediction.predict_engagement(payload.priority, payload.type)
        threshold = DELIVERY_THRESHOLDS[payload.priority]

        if score >= threshold and self._rate_limiter.is_within_limit():
            logger.info(
                "notification_good_time",
                notification_id=payload.id,
                score=round(score, 3),
                threshold=threshold,
            )
            return True

        logger.info(
            "notification_deferred",
            notification_id=payload.id,
            score=round(score, 3),
            threshold=threshold,
        )
        return False

    async def _add_to_queue(self, payload: NotificationPayload) -> None:
        score = await self.prediction.predict_engagement(payload.priority, payload.type)
        scheduled = ScheduledNotification(
            **payload.model_dump(include=set(NotificationPayload.model_fields)),
            original_received_at=self._clock(),
            delivery_score=score,
            attempts=0,
        )
        self._queue.append(scheduled)
        # Stable sort: equal keys keep arrival order
        self._queue.sort(key=_queue_sort_key)

        max_size = self.settings.queue_max_size
        if len(self._queue) > max_size:
            dropped = [item.id for item in self._queue[max_size:]]
            self._queue = self._queue[:max_size]
            logger.warning("notification_queue_truncated", dropped=dropped)

        await self._save_queue()
        logger.info(
            "notification_queued",
            notification_id=payload.id,
            score=round(score, 3),
            queue_size=len(self._queue),
        )

    async def process_queue(self) -> QueueProcessResult:
        """Run one re-evaluation pass over the queue in stored order.

        Expired items are removed; a rate-limit rejection ends the pass;
        non-urgent items wait out quiet hours; everything else is re-scored
        and delivered when it clears the discounted threshold or has been
        retried enough times.
        """
        result = QueueProcessResult()
        delivered: list[ScheduledNotification] = []

        async with self._lock:
            if not self._queue:
                return result

            now = self._clock()
            expiry_ms = self.settings.queue_expiry_hours * HOUR_MS
            quiet_hours = self.settings_service.get().quiet_hours
            changed = False

            for item in list(self._queue):
                if now - item.original_received_at > expiry_ms:
                    self._remove_from_queue(item)
                    result.expired.append(item.id)
                    changed = True
                    continue

                if not self._rate_limiter.is_within_limit():
                    break

                is_urgent = item.priority == NotificationPriority.URGENT
                if not is_urgent and self.context.is_in_quiet_hours(quiet_hours, now):
                    continue

                score = await self.prediction.predict_engagement(item.priority, item.type)
                threshold = DELIVERY_THRESHOLDS[item.priority]

                if score >= threshold * QUEUED_THRESHOLD_DISCOUNT:
                    delivered.append(item)
                    await self._deliver_queued(item)
                    continue

                item.attempts += 1
                item.delivery_score = score
                changed = True

                if (
                    item.attempts >= self.settings.queue_force_delivery_attempts
                    and item.priority != NotificationPriority.LOW
                ):
                    logger.info(
                        "notification_force_delivered",
                        notification_id=item.id,
                        attempts=item.attempts,
                    )
                    delivered.append(item)
                    await self._deliver_queued(item)

            result.delivered = [item.id for item in delivered]
            result.remaining = len(self._queue)

            if changed:
                await self._save_queue()

        if delivered or result.expired:
            logger.info(
                "queue_processed",
                delivered=len(result.delivered),
                expired=len(result.expired),
                remaining=result.remaining,
            )
        await self._notify_callbacks(delivered)
        return result

    def _remove_from_queue(self, item: ScheduledNotification) -> None:
        self._queue = [queued for queued in self._queue if queued is not item]

    async def _deliver_queued(self, item: ScheduledNotification) -> None:
        """Take an item off the queue, persist that, then deliver it.

        The item leaves the in-memory queue before any await, so a pass
        interrupted mid-delivery never leaves it behind to be shown again.
        """
        self._remove_from_queue(item)
        await self._save_queue()
        await self._deliver(item)

    # Delivery

    async def _deliver(self, payload: NotificationPayload) -> None:
        """Record the delivery against the rate limit and present it."""
        self._rate_limiter.record_delivery()
        await self._save_delivery_stats()

        presented = await self.push.present(payload)
        logger.info(
            "notification_delivered",
            notification_id=payload.id,
            priority=payload.priority.value,
            type=payload.type.value,
            presented=presented,
        )

    async def _notify_callbacks(self, payloads: list[NotificationPayload]) -> None:
        for payload in payloads:
            for callback in list(self._callbacks):
                try:
                    result = callback(payload)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(
                        "delivery_callback_error",
                        notification_id=payload.id,
                        error=str(e),
                    )

    def on_deliver(self, callback: DeliveryCallback) -> Callable[[], None]:
        """Register a delivery callback. Returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    # Queue access

    def get_queue(self) -> list[ScheduledNotification]:
        return [item.model_copy(deep=True) for item in self._queue]

    def get_queue_size(self) -> int:
        return len(self._queue)

    async def cancel_notification(self, notification_id: str) -> bool:
        """Remove a queued notification. Returns False if it is not queued."""
        async with self._lock:
            for index, item in enumerate(self._queue):
                if item.id == notification_id:
                    del self._queue[index]
                    await self._save_queue()
                    logger.info("notification_cancelled", notification_id=notification_id)
                    return True
        return False

    async def clear_queue(self) -> None:
        async with self._lock:
            self._queue = []
            await self._save_queue()

    def set_rate_limit_config(self, **changes) -> RateLimitConfig:
        try:
            return self._rate_limiter.set_config(**changes)
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error.get("loc", ())) or "rate_limit"
            raise InvalidConfigurationError(field, error.get("msg", str(e))) from e

    def get_rate_limit_config(self) -> RateLimitConfig:
        return self._rate_limiter.config.model_copy()

    def get_delivery_stats(self) -> DeliveryStats:
        return self._rate_limiter.get_stats()

    # Persistence

    async def _load_queue(self) -> None:
        stored = await self._json.load(QUEUE_STORAGE_KEY, default=[])
        try:
            self._queue = [ScheduledNotification.model_validate(item) for item in stored]
        except (ValidationError, TypeError) as e:
            logger.warning("notification_queue_invalid", error=str(e))
            self._queue = []
        self._queue.sort(key=_queue_sort_key)
        logger.info("notification_queue_loaded", count=len(self._queue))

    async def _save_queue(self) -> bool:
        return await self._json.save(
            QUEUE_STORAGE_KEY, [item.model_dump(mode="json") for item in self._queue]
        )

    async def _load_delivery_stats(self) -> None:
        stored = await self._json.load(DELIVERY_STATS_KEY, default=None)
        if stored is None:
            return
        try:
            self._rate_limiter.stats = DeliveryStats.model_validate(stored)
        except (ValidationError, TypeError) as e:
            logger.warning("delivery_stats_invalid", error=str(e))

    async def _save_delivery_stats(self) -> bool:
        return await self._json.save(
            DELIVERY_STATS_KEY, self._rate_limiter.stats.model_dump(mode="json")
        )
