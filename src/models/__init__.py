"""Models package exports."""

from src.models.context import (
    AppState,
    DeviceTelemetry,
    LocationLabel,
    LocationPattern,
    LocationSample,
    LocationVisit,
    NetworkType,
    NotificationContext,
)
from src.models.engagement import (
    EngagementEvent,
    EngagementEventType,
    EngagementProfile,
    Metadata,
    MetadataValue,
)
from src.models.notification import (
    DeliveryDecision,
    DeliveryStats,
    NotificationPayload,
    NotificationPriority,
    NotificationType,
    PermissionStatus,
    PushTokenInfo,
    QueueProcessResult,
    RateLimitConfig,
    ScheduledNotification,
    TimeWindow,
)
from src.models.settings import FrequencyPreference, NotificationSettings, QuietHoursConfig

__all__ = [
    "AppState",
    "DeliveryDecision",
    "DeliveryStats",
    "DeviceTelemetry",
    "EngagementEvent",
    "EngagementEventType",
    "EngagementProfile",
    "FrequencyPreference",
    "LocationLabel",
    "LocationPattern",
    "LocationSample",
    "LocationVisit",
    "Metadata",
    "MetadataValue",
    "NetworkType",
    "NotificationContext",
    "NotificationPayload",
    "NotificationPriority",
    "NotificationSettings",
    "NotificationType",
    "PermissionStatus",
    "PushTokenInfo",
    "QueueProcessResult",
    "QuietHoursConfig",
    "RateLimitConfig",
    "ScheduledNotification",
    "TimeWindow",
]
