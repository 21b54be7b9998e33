"""Notification engine: wires the components and exposes the host-facing API."""

from functools import lru_cache
from typing import Callable, Optional

import structlog

from src.config import Settings, get_settings
from src.exceptions import InvalidConfigurationError
from src.models.context import AppState, LocationVisit, NetworkType
from src.models.engagement import EngagementEvent, EngagementProfile, Metadata
from src.models.notification import (
    DeliveryDecision,
    DeliveryStats,
    NotificationPayload,
    NotificationPriority,
    NotificationType,
    PermissionStatus,
    QueueProcessResult,
    RateLimitConfig,
    ScheduledNotification,
    TimeWindow,
)
from src.models.settings import NotificationSettings, QuietHoursConfig
from src.services.clock import Clock, now_ms
from src.services.context_service import ContextService, DeviceTelemetrySource
from src.services.engagement_service import EngagementService
from src.services.location_service import LocationService
from src.services.logging_service import configure_logging, get_logger
from src.services.prediction_service import PredictionService
from src.services.push_service import LocalPushTransport, PushService, PushTransport
from src.services.scheduler_service import DeliveryCallback, SchedulerService
from src.services.settings_service import NotificationSettingsService
from src.services.storage_service import KeyValueStore, create_store

logger = structlog.get_logger(__name__)


def _coerce_kind(
    priority: NotificationPriority | str,
    notification_type: NotificationType | str,
) -> tuple[NotificationPriority, NotificationType]:
    """Validate a priority and type pair, raising InvalidConfigurationError."""
    try:
        priority = NotificationPriority(priority)
    except ValueError as e:
        raise InvalidConfigurationError("priority", str(e)) from e
    try:
        notification_type = NotificationType(notification_type)
    except ValueError as e:
        raise InvalidConfigurationError("type", str(e)) from e
    return priority, notification_type


class NotificationEngine:
    """Engagement-aware notification delivery for a single device.

    Each collaborator can be injected; anything omitted gets an in-process
    default (in-memory or Redis store per settings, local push transport,
    static telemetry).
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        transport: Optional[PushTransport] = None,
        telemetry: Optional[DeviceTelemetrySource] = None,
        settings: Optional[Settings] = None,
        clock: Clock = now_ms,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_store(self.settings)
        self.clock = clock

        self.notification_settings = NotificationSettingsService(self.store)
        self.engagement = EngagementService(self.store, self.settings, clock)
        self.location = LocationService(self.store, self.settings, clock)
        self.context = ContextService(
            self.location, self.engagement, telemetry, self.settings, clock
        )
        self.prediction = PredictionService(
            self.engagement, self.context, self.notification_settings, clock
        )
        self.push = PushService(transport or LocalPushTransport(), self.store, clock)
        self.scheduler = SchedulerService(
            self.store,
            self.prediction,
            self.context,
            self.engagement,
            self.notification_settings,
            self.push,
            self.settings,
            clock,
        )
        self._unsubscribe_push: Optional[Callable[[], None]] = None
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Load all persisted state and start the queue loop. Idempotent."""
        if self._initialized:
            logger.info("engine_already_initialized")
            return

        await self.notification_settings.load()
        await self.engagement.initialize()
        await self.location.initialize()
        await self.context.initialize()
        self._unsubscribe_push = self.push.on_notification(self.schedule_notification)
        await self.scheduler.initialize()

        self._initialized = True
        logger.info("engine_initialized")

    async def cleanup(self) -> None:
        """Stop the queue loop and flush state. Safe without initialize()."""
        if self._unsubscribe_push is not None:
            self._unsubscribe_push()
            self._unsubscribe_push = None

        await self.scheduler.cleanup()
        await self.location.cleanup()
        await self.engagement.cleanup()
        self._initialized = False
        logger.info("engine_cleaned_up")

    # Delivery

    async def schedule_notification(self, payload: NotificationPayload) -> DeliveryDecision:
        return await self.scheduler.schedule_notification(payload)

    async def cancel_notification(self, notification_id: str) -> bool:
        return await self.scheduler.cancel_notification(notification_id)

    async def process_queue(self) -> QueueProcessResult:
        return await self.scheduler.process_queue()

    def get_queue(self) -> list[ScheduledNotification]:
        return self.scheduler.get_queue()

    def get_delivery_stats(self) -> DeliveryStats:
        return self.scheduler.get_delivery_stats()

    def on_deliver(self, callback: DeliveryCallback) -> Callable[[], None]:
        return self.scheduler.on_deliver(callback)

    def set_rate_limit_config(self, **changes) -> RateLimitConfig:
        return self.scheduler.set_rate_limit_config(**changes)

    # Prediction

    async def predict_engagement(
        self,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        notification_type: NotificationType = NotificationType.EVENT,
    ) -> float:
        priority, notification_type = _coerce_kind(priority, notification_type)
        return await self.prediction.predict_engagement(priority, notification_type)

    async def is_good_time_now(
        self,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        notification_type: NotificationType = NotificationType.EVENT,
        threshold: float = 0.5,
    ) -> bool:
        priority, notification_type = _coerce_kind(priority, notification_type)
        return await self.prediction.is_good_time_now(priority, notification_type, threshold)

    def get_optimal_delivery_windows(self, count: int = 5) -> list[TimeWindow]:
        return self.prediction.get_optimal_delivery_windows(count)

    def get_insights(self) -> dict:
        return self.prediction.get_insights()

    def get_engagement_profile(self) -> EngagementProfile:
        return self.engagement.get_profile()

    # Host event feeds

    async def handle_app_state_change(self, state: AppState) -> None:
        self.context.set_app_state(state)
        await self.engagement.handle_app_state_change(state)

    def set_network_type(self, network_type: NetworkType) -> None:
        self.context.set_network_type(network_type)

    def update_location(self, lat: float, lon: float) -> Optional[LocationVisit]:
        return self.location.update_location(lat, lon)

    def track_screen_view(self, screen_name: str) -> EngagementEvent:
        return self.engagement.track_screen_view(screen_name)

    def track_feature_used(
        self, feature_name: str, metadata: Optional[Metadata] = None
    ) -> EngagementEvent:
        return self.engagement.track_feature_used(feature_name, metadata)

    def track_notification_opened(self, notification_id: str, notification_type: str) -> None:
        self.engagement.track_notification_opened(notification_id, notification_type)

    def track_notification_dismissed(self, notification_id: str, notification_type: str) -> None:
        self.engagement.track_notification_dismissed(notification_id, notification_type)

    # Push permission

    async def request_permission(self) -> PermissionStatus:
        return await self.push.request_permission()

    async def check_permission(self) -> PermissionStatus:
        return await self.push.check_permission()

    # Settings

    def get_settings(self) -> NotificationSettings:
        return self.notification_settings.get()

    async def set_enabled(self, enabled: bool) -> NotificationSettings:
        return await self.notification_settings.set_enabled(enabled)

    async def set_type_enabled(self, notification_type: str, enabled: bool) -> NotificationSettings:
        return await self.notification_settings.set_type_enabled(notification_type, enabled)

    async def set_quiet_hours(self, quiet_hours: QuietHoursConfig | dict) -> NotificationSettings:
        return await self.notification_settings.set_quiet_hours(quiet_hours)

    async def set_frequency(self, frequency: str) -> NotificationSettings:
        return await self.notification_settings.set_frequency(frequency)

    async def set_smart_timing(self, enabled: bool) -> NotificationSettings:
        return await self.notification_settings.set_smart_timing(enabled)


@lru_cache
def get_engine() -> NotificationEngine:
    """Process-wide default engine built from environment settings."""
    settings = get_settings()
    configure_logging(settings.log_level)
    engine = NotificationEngine(settings=settings)
    get_logger("engine").info("default_engine_created", storage_backend=settings.storage_backend)
    return engine
