"""Notification payload, queue, rate limit and push models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from src.models.engagement import Metadata


class NotificationType(str, Enum):
    """Valid notification types."""

    NEARBY_USER = "nearby_user"
    MESSAGE = "message"
    MATCH = "match"
    EVENT = "event"
    PROMOTION = "promotion"


class NotificationPriority(str, Enum):
    """Notification priority, most urgent first."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank: urgent=0 through low=3."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    NotificationPriority.URGENT: 0,
    NotificationPriority.HIGH: 1,
    NotificationPriority.NORMAL: 2,
    NotificationPriority.LOW: 3,
}


class PermissionStatus(str, Enum):
    """Push permission as reported by the transport."""

    GRANTED = "granted"
    DENIED = "denied"
    NOT_DETERMINED = "not_determined"
    BLOCKED = "blocked"


class DeliveryDecision(str, Enum):
    """Outcome of scheduling an inbound notification."""

    DROPPED = "dropped"
    DELIVERED = "delivered"
    QUEUED = "queued"


class NotificationPayload(BaseModel):
    """An inbound notification awaiting a delivery decision."""

    id: str = Field(..., min_length=1)
    title: str
    body: str = ""
    type: NotificationType = NotificationType.EVENT
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: Metadata = Field(default_factory=dict)
    created_at: int  # ms since epoch


class ScheduledNotification(NotificationPayload):
    """A payload held in the delivery queue."""

    original_received_at: int
    delivery_score: float = 0.0
    attempts: int = 0


class TimeWindow(BaseModel):
    """A contiguous range of hours scored as favorable for delivery.

    ``end`` is exclusive and wraps past midnight (23 -> 0).
    """

    start: int
    end: int
    score: float


class RateLimitConfig(BaseModel):
    """Sliding-window delivery caps."""

    max_per_hour: int = Field(default=5, ge=1)
    max_per_day: int = Field(default=20, ge=1)
    min_interval_ms: int = Field(default=5 * 60 * 1000, ge=0)


class DeliveryStats(BaseModel):
    """Sliding log of delivery instants used for rate limiting."""

    last_delivery_timestamp: int = 0
    timestamps: list[int] = Field(default_factory=list)
    last_hour_count: int = 0
    last_day_count: int = 0


class QueueProcessResult(BaseModel):
    """Summary of one queue-processing tick."""

    delivered: list[str] = Field(default_factory=list)
    expired: list[str] = Field(default_factory=list)
    remaining: int = 0


class PushTokenInfo(BaseModel):
    """Device push token as last reported by the transport."""

    token: str
    updated_at: int
    platform: Optional[str] = None
