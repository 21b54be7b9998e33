"""Engagement event log and derived profile models."""

from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field

# Closed set of value types carried in event and payload metadata.
MetadataValue = Union[bool, int, float, str]
Metadata = dict[str, MetadataValue]

HOURS_PER_DAY = 24
DAYS_PER_WEEK = 7
NEUTRAL_SCORE = 0.5


class EngagementEventType(str, Enum):
    """Kinds of user activity recorded in the event log."""

    APP_OPEN = "app_open"
    APP_CLOSE = "app_close"
    APP_BACKGROUND = "app_background"
    APP_FOREGROUND = "app_foreground"
    NOTIFICATION_RECEIVED = "notification_received"
    NOTIFICATION_OPENED = "notification_opened"
    NOTIFICATION_DISMISSED = "notification_dismissed"
    FEATURE_USED = "feature_used"
    SCREEN_VIEWED = "screen_viewed"


# Event types that count toward hourly/daily activity density
ACTIVITY_EVENT_TYPES = frozenset(
    {
        EngagementEventType.APP_OPEN,
        EngagementEventType.APP_FOREGROUND,
        EngagementEventType.FEATURE_USED,
    }
)


class EngagementEvent(BaseModel):
    """A single immutable entry in the engagement log."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: EngagementEventType
    timestamp: int  # ms since epoch
    metadata: Metadata = Field(default_factory=dict)


class EngagementProfile(BaseModel):
    """Rolling engagement profile derived from the event log.

    Attributes:
        active_hours: Activity density per hour of day (0-23), each in [0, 1]
        active_days: Activity density per day of week (0=Sunday), each in [0, 1]
        avg_session_duration_ms: Mean duration of closed sessions
        notification_response_rate: opened / received, 0.5 with no data
        last_active_timestamp: Newest activity in ms since epoch, 0 if never
        total_sessions: Number of app_open events
        total_notifications_received: Count of notification_received events
        total_notifications_opened: Count of notification_opened events
    """

    active_hours: list[float] = Field(
        default_factory=lambda: [NEUTRAL_SCORE] * HOURS_PER_DAY,
        min_length=HOURS_PER_DAY,
        max_length=HOURS_PER_DAY,
    )
    active_days: list[float] = Field(
        default_factory=lambda: [NEUTRAL_SCORE] * DAYS_PER_WEEK,
        min_length=DAYS_PER_WEEK,
        max_length=DAYS_PER_WEEK,
    )
    avg_session_duration_ms: float = 0.0
    notification_response_rate: float = NEUTRAL_SCORE
    last_active_timestamp: int = 0
    total_sessions: int = 0
    total_notifications_received: int = 0
    total_notifications_opened: int = 0

    @classmethod
    def default(cls) -> "EngagementProfile":
        """Cold-start profile used when there is no event history."""
        return cls()
