"""Engagement prediction: weighted scoring of the current moment for delivery."""

import math
from typing import Optional

import structlog

from src.models.context import AppState, LocationLabel, NetworkType, NotificationContext
from src.models.engagement import DAYS_PER_WEEK, HOURS_PER_DAY, EngagementProfile
from src.models.notification import NotificationPriority, NotificationType, TimeWindow
from src.services.clock import DAY_MS, HOUR_MS, Clock, local_day_of_week, local_hour, now_ms
from src.services.context_service import ContextService
from src.services.engagement_service import EngagementService
from src.services.settings_service import NotificationSettingsService

logger = structlog.get_logger(__name__)

# Weights of the prediction factors; they sum to 1.0
WEIGHTS = {
    "hour_of_day": 0.30,
    "day_of_week": 0.15,
    "recent_activity": 0.25,
    "response_rate": 0.15,
    "context": 0.15,
}

PRIORITY_MULTIPLIERS = {
    NotificationPriority.URGENT: 1.5,
    NotificationPriority.HIGH: 1.2,
    NotificationPriority.NORMAL: 1.0,
    NotificationPriority.LOW: 0.8,
}

TYPE_IMPORTANCE = {
    NotificationType.MATCH: 0.9,
    NotificationType.MESSAGE: 0.85,
    NotificationType.NEARBY_USER: 0.6,
    NotificationType.EVENT: 0.5,
    NotificationType.PROMOTION: 0.3,
}

# Score returned for any non-urgent notification during quiet hours
QUIET_HOURS_SCORE = 0.1

# Delivery window scan
WINDOW_HOUR_WEIGHT = 0.7
WINDOW_DAY_WEIGHT = 0.3
WINDOW_MERGE_TOLERANCE = 0.2
WINDOW_MIN_SCORE = 0.5

# (upper bound in minutes, score), checked in order
ACTIVITY_SCORE_STEPS = (
    (5, 1.0),
    (30, 0.9),
    (60, 0.7),
    (120, 0.5),
    (360, 0.3),
)
STALE_ACTIVITY_SCORE = 0.2
NEVER_ACTIVE_SCORE = 0.5

APP_STATE_ADJUSTMENT = {
    AppState.ACTIVE: 0.3,
    AppState.BACKGROUND: 0.1,
    AppState.INACTIVE: -0.1,
}
NETWORK_ADJUSTMENT = {
    NetworkType.WIFI: 0.1,
    NetworkType.NONE: -0.2,
}
LOCATION_ADJUSTMENT = {
    LocationLabel.HOME: 0.1,
    LocationLabel.WORK: -0.1,
    LocationLabel.COMMUTING: 0.05,
}
LOW_BATTERY_LEVEL = 0.2
LOW_BATTERY_PENALTY = 0.2
LOW_POWER_PENALTY = 0.1


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def hour_score(hour: int, profile: EngagementProfile) -> float:
    """Hourly density smoothed with its circular neighbours (0.6/0.2/0.2)."""
    hours = profile.active_hours
    return (
        hours[hour % HOURS_PER_DAY] * 0.6
        + hours[(hour - 1) % HOURS_PER_DAY] * 0.2
        + hours[(hour + 1) % HOURS_PER_DAY] * 0.2
    )


def day_score(day: int, profile: EngagementProfile) -> float:
    return profile.active_days[day % DAYS_PER_WEEK]


def activity_score(minutes_since_last_activity: float) -> float:
    """Recency score: 1.0 within 5 minutes decaying to 0.2 after 6 hours."""
    if math.isinf(minutes_since_last_activity):
        return NEVER_ACTIVE_SCORE
    for upper_bound, score in ACTIVITY_SCORE_STEPS:
        if minutes_since_last_activity < upper_bound:
            return score
    return STALE_ACTIVITY_SCORE


def context_score(context: NotificationContext) -> float:
    """Device and location suitability, starting from a neutral 0.5."""
    score = 0.5
    score += APP_STATE_ADJUSTMENT.get(context.app_state, 0.0)
    score += NETWORK_ADJUSTMENT.get(context.network_type, 0.0)
    if context.battery_level < LOW_BATTERY_LEVEL:
        score -= LOW_BATTERY_PENALTY
    if context.is_low_power_mode:
        score -= LOW_POWER_PENALTY
    score += LOCATION_ADJUSTMENT.get(context.location_context, 0.0)
    return _clamp(score)


def calculate_engagement_score(
    context: NotificationContext,
    profile: EngagementProfile,
    priority: NotificationPriority,
    notification_type: NotificationType,
) -> float:
    """Weighted engagement likelihood in [0, 1].

    Quiet hours override everything except urgent notifications.
    """
    priority = NotificationPriority(priority)
    notification_type = NotificationType(notification_type)

    if context.is_quiet_hours and priority != NotificationPriority.URGENT:
        return QUIET_HOURS_SCORE

    base = (
        hour_score(context.time_of_day, profile) * WEIGHTS["hour_of_day"]
        + day_score(context.day_of_week, profile) * WEIGHTS["day_of_week"]
        + activity_score(context.minutes_since_last_activity) * WEIGHTS["recent_activity"]
        + profile.notification_response_rate * WEIGHTS["response_rate"]
        + context_score(context) * WEIGHTS["context"]
    )
    base *= PRIORITY_MULTIPLIERS[priority]
    base *= TYPE_IMPORTANCE[notification_type]
    return _clamp(base)


def _window_slot_score(hour: int, day: int, profile: EngagementProfile) -> float:
    return (
        profile.active_hours[hour % HOURS_PER_DAY] * WINDOW_HOUR_WEIGHT
        + profile.active_days[day % DAYS_PER_WEEK] * WINDOW_DAY_WEIGHT
    )


def optimal_delivery_windows(
    profile: EngagementProfile,
    current_hour: int,
    current_day: int,
    count: int = 5,
) -> list[TimeWindow]:
    """Scan the next 24 hours and return the best contiguous windows.

    Adjacent hours merge into one window when their scores differ by less
    than 0.2 (the window keeps the running mean); only windows scoring
    above 0.5 are returned, best first, ties broken by earliest start.
    """
    windows: list[tuple[int, TimeWindow]] = []

    for offset in range(HOURS_PER_DAY):
        hour = (current_hour + offset) % HOURS_PER_DAY
        next_hour = (hour + 1) % HOURS_PER_DAY
        # Hours past midnight belong to tomorrow
        day = current_day
        if current_hour + offset >= HOURS_PER_DAY:
            day = (current_day + 1) % DAYS_PER_WEEK
        score = _window_slot_score(hour, day, profile)

        last = windows[-1][1] if windows else None
        if (
            last is not None
            and last.end == hour
            and abs(last.score - score) < WINDOW_MERGE_TOLERANCE
        ):
            last.end = next_hour
            last.score = (last.score + score) / 2
        elif score > WINDOW_MIN_SCORE:
            windows.append((offset, TimeWindow(start=hour, end=next_hour, score=score)))

    ranked = sorted(
        (item for item in windows if item[1].score > WINDOW_MIN_SCORE),
        key=lambda item: (-item[1].score, item[0]),
    )
    return [window for _, window in ranked[:count]]


class PredictionService:
    """Predicts how likely the user is to engage with a notification right now."""

    def __init__(
        self,
        engagement: EngagementService,
        context: ContextService,
        settings_service: NotificationSettingsService,
        clock: Clock = now_ms,
    ):
        self.engagement = engagement
        self.context = context
        self.settings_service = settings_service
        self._clock = clock

    async def get_context(self) -> NotificationContext:
        quiet_hours = self.settings_service.get().quiet_hours
        return await self.context.get_current_context(quiet_hours)

    async def predict_engagement(
        self,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        notification_type: NotificationType = NotificationType.EVENT,
    ) -> float:
        """Score the current moment for a notification of this priority and type."""
        context = await self.get_context()
        profile = self.engagement.get_profile()
        score = calculate_engagement_score(context, profile, priority, notification_type)
        logger.debug(
            "engagement_predicted",
            priority=NotificationPriority(priority).value,
            type=NotificationType(notification_type).value,
            score=round(score, 3),
            quiet_hours=context.is_quiet_hours,
        )
        return score

    async def is_good_time_now(
        self,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        notification_type: NotificationType = NotificationType.EVENT,
        threshold: float = 0.5,
    ) -> bool:
        score = await self.predict_engagement(priority, notification_type)
        return score >= threshold

    def get_optimal_delivery_windows(self, count: int = 5) -> list[TimeWindow]:
        now = self._clock()
        return optimal_delivery_windows(
            self.engagement.get_profile(),
            current_hour=local_hour(now),
            current_day=local_day_of_week(now),
            count=count,
        )

    def score_delivery_time(self, timestamp: int) -> float:
        """Profile-only score for delivering at a given instant."""
        return _window_slot_score(
            local_hour(timestamp),
            local_day_of_week(timestamp),
            self.engagement.get_profile(),
        )

    def get_next_optimal_time(
        self,
        min_delay_ms: int = 0,
        max_delay_ms: int = DAY_MS,
    ) -> int:
        """Start of the best upcoming window within the delay bounds.

        Falls back to the earliest allowed time when no window fits.
        """
        now = self._clock()
        earliest = now + min_delay_ms
        latest = now + max_delay_ms
        current_hour = local_hour(now)

        for window in self.get_optimal_delivery_windows(3):
            hours_until = (window.start - current_hour) % HOURS_PER_DAY
            window_start = now + hours_until * HOUR_MS
            if earliest <= window_start <= latest:
                return window_start
        return earliest

    def get_insights(self) -> dict:
        """Best hours and days plus headline profile stats."""
        profile = self.engagement.get_profile()
        best_hours = sorted(range(HOURS_PER_DAY), key=lambda h: -profile.active_hours[h])[:3]
        best_days = sorted(range(DAYS_PER_WEEK), key=lambda d: -profile.active_days[d])[:2]
        return {
            "best_hours": best_hours,
            "best_days": best_days,
            "response_rate": profile.notification_response_rate,
            "total_sessions": profile.total_sessions,
        }
