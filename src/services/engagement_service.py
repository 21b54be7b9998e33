"""Engagement service: append-only event log and derived engagement profile."""

from typing import Iterable, Optional
from uuid import uuid4

import structlog
from pydantic import ValidationError

from src.config import Settings, get_settings
from src.models.context import AppState
from src.models.engagement import (
    ACTIVITY_EVENT_TYPES,
    DAYS_PER_WEEK,
    HOURS_PER_DAY,
    NEUTRAL_SCORE,
    EngagementEvent,
    EngagementEventType,
    EngagementProfile,
    Metadata,
)
from src.services.clock import (
    DAY_MS,
    MINUTE_MS,
    Clock,
    local_day_of_week,
    local_hour,
    now_ms,
)
from src.services.storage_service import (
    ENGAGEMENT_EVENTS_KEY,
    DebouncedSaver,
    JsonStore,
    KeyValueStore,
)

logger = structlog.get_logger(__name__)

# Hour and day scores above this mean the user is probably around
LIKELY_ACTIVE_THRESHOLD = 0.4


def _normalize(counts: list[int]) -> list[float]:
    """Max-normalize bucket counts to [0, 1]; empty buckets stay neutral."""
    peak = max(counts)
    if peak == 0:
        return [NEUTRAL_SCORE] * len(counts)
    return [count / peak if count > 0 else NEUTRAL_SCORE for count in counts]


def calculate_profile(
    events: Iterable[EngagementEvent],
    now: int,
    window_days: int = 30,
) -> EngagementProfile:
    """Derive an engagement profile from the trailing window of the event log.

    Sessions are paired app_open -> app_close. An open without a matching
    close counts toward ``total_sessions`` but not toward the average
    duration. With no events in the window the cold-start profile is
    returned.
    """
    window_start = now - window_days * DAY_MS
    recent = sorted(
        (e for e in events if e.timestamp >= window_start),
        key=lambda e: e.timestamp,
    )
    if not recent:
        return EngagementProfile.default()

    hour_counts = [0] * HOURS_PER_DAY
    day_counts = [0] * DAYS_PER_WEEK

    total_sessions = 0
    closed_sessions = 0
    avg_session_duration = 0.0
    session_start: Optional[int] = None

    received = 0
    opened = 0
    last_active = 0

    for event in recent:
        if event.type != EngagementEventType.NOTIFICATION_RECEIVED:
            last_active = max(last_active, event.timestamp)

        if event.type in ACTIVITY_EVENT_TYPES:
            hour_counts[local_hour(event.timestamp)] += 1
            day_counts[local_day_of_week(event.timestamp)] += 1

        if event.type == EngagementEventType.APP_OPEN:
            session_start = event.timestamp
            total_sessions += 1
        elif event.type == EngagementEventType.APP_CLOSE and session_start is not None:
            closed_sessions += 1
            duration = event.timestamp - session_start
            avg_session_duration = (
                avg_session_duration * (closed_sessions - 1) + duration
            ) / closed_sessions
            session_start = None
        elif event.type == EngagementEventType.NOTIFICATION_RECEIVED:
            received += 1
        elif event.type == EngagementEventType.NOTIFICATION_OPENED:
            opened += 1

    if received > 0:
        response_rate = min(1.0, max(0.0, opened / received))
    else:
        response_rate = NEUTRAL_SCORE

    return EngagementProfile(
        active_hours=_normalize(hour_counts),
        active_days=_normalize(day_counts),
        avg_session_duration_ms=avg_session_duration,
        notification_response_rate=response_rate,
        last_active_timestamp=last_active,
        total_sessions=total_sessions,
        total_notifications_received=received,
        total_notifications_opened=opened,
    )


class EngagementService:
    """Records engagement events and maintains the rolling profile.

    The profile is a cache: it is recomputed from the event log on session
    boundaries, on load, and on explicit ``recalculate_profile()`` calls.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[Settings] = None,
        clock: Clock = now_ms,
    ):
        self.settings = settings or get_settings()
        self._json = JsonStore(store)
        self._clock = clock
        self._events: list[EngagementEvent] = []
        self._profile = EngagementProfile.default()
        self._session_start: Optional[int] = None
        self._app_state = AppState.ACTIVE
        self._initialized = False
        self._saver = DebouncedSaver(
            self.save_events,
            self.settings.save_debounce_seconds,
            name=ENGAGEMENT_EVENTS_KEY,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Load persisted events, rebuild the profile and open a session."""
        if self._initialized:
            logger.info("engagement_already_initialized")
            return

        await self.load_events()
        self.recalculate_profile()
        self.start_session()
        self._initialized = True
        logger.info("engagement_initialized", events=len(self._events))

    async def cleanup(self) -> None:
        """Flush pending saves. Safe to call repeatedly or before initialize."""
        await self._saver.flush()
        self._initialized = False
        logger.info("engagement_cleaned_up")

    # Event recording

    def record_event(
        self,
        event_type: EngagementEventType,
        metadata: Optional[Metadata] = None,
    ) -> EngagementEvent:
        """Append an event to the log and schedule a debounced save."""
        now = self._clock()
        event = EngagementEvent(
            id=f"evt_{now}_{uuid4().hex[:9]}",
            type=EngagementEventType(event_type),
            timestamp=now,
            metadata=metadata or {},
        )
        self._events.append(event)

        max_events = self.settings.engagement_max_events
        if len(self._events) > max_events:
            self._events = self._events[-max_events:]

        if event.type != EngagementEventType.NOTIFICATION_RECEIVED:
            self._profile.last_active_timestamp = now

        self._saver.schedule()
        logger.debug("engagement_event_recorded", event_id=event.id, type=event.type.value)
        return event

    def start_session(self) -> None:
        """Open a session with an app_open event."""
        self._session_start = self._clock()
        self.record_event(EngagementEventType.APP_OPEN)
        self._profile.total_sessions += 1

    def end_session(self) -> Optional[int]:
        """Close the open session, if any, and recompute the profile.

        Returns:
            Session duration in ms, or None when no session was open
        """
        if self._session_start is None:
            return None

        duration = self._clock() - self._session_start
        self.record_event(EngagementEventType.APP_CLOSE, {"duration": duration})
        self._session_start = None
        self.recalculate_profile()
        logger.info("engagement_session_ended", duration_ms=duration)
        return duration

    async def handle_app_state_change(self, next_state: AppState) -> None:
        """Translate foreground/background transitions into session events."""
        next_state = AppState(next_state)
        previous = self._app_state
        self._app_state = next_state

        if previous == AppState.ACTIVE and next_state != AppState.ACTIVE:
            self.record_event(EngagementEventType.APP_BACKGROUND)
            self.end_session()
            await self._saver.flush()
        elif previous != AppState.ACTIVE and next_state == AppState.ACTIVE:
            self.record_event(EngagementEventType.APP_FOREGROUND)
            self.start_session()

    def track_screen_view(self, screen_name: str) -> EngagementEvent:
        return self.record_event(EngagementEventType.SCREEN_VIEWED, {"screen_name": screen_name})

    def track_feature_used(
        self, feature_name: str, metadata: Optional[Metadata] = None
    ) -> EngagementEvent:
        return self.record_event(
            EngagementEventType.FEATURE_USED,
            {"feature_name": feature_name, **(metadata or {})},
        )

    def track_notification_received(self, notification_id: str, notification_type: str) -> None:
        self.record_event(
            EngagementEventType.NOTIFICATION_RECEIVED,
            {"notification_id": notification_id, "type": notification_type},
        )
        self._profile.total_notifications_received += 1

    def track_notification_opened(self, notification_id: str, notification_type: str) -> None:
        self.record_event(
            EngagementEventType.NOTIFICATION_OPENED,
            {"notification_id": notification_id, "type": notification_type},
        )
        self._profile.total_notifications_opened += 1
        if self._profile.total_notifications_received > 0:
            self._profile.notification_response_rate = min(
                1.0,
                self._profile.total_notifications_opened
                / self._profile.total_notifications_received,
            )

    def track_notification_dismissed(self, notification_id: str, notification_type: str) -> None:
        self.record_event(
            EngagementEventType.NOTIFICATION_DISMISSED,
            {"notification_id": notification_id, "type": notification_type},
        )

    # Profile access

    def recalculate_profile(self) -> EngagementProfile:
        """Rebuild the profile from the trailing window of the event log."""
        self._profile = calculate_profile(
            self._events,
            now=self._clock(),
            window_days=self.settings.profile_window_days,
        )
        return self.get_profile()

    def get_profile(self) -> EngagementProfile:
        return self._profile.model_copy(deep=True)

    def get_events(self) -> list[EngagementEvent]:
        return list(self._events)

    def get_hour_score(self, hour: int) -> float:
        return self._profile.active_hours[hour % HOURS_PER_DAY]

    def get_day_score(self, day: int) -> float:
        return self._profile.active_days[day % DAYS_PER_WEEK]

    def get_notification_response_rate(self) -> float:
        return self._profile.notification_response_rate

    def get_minutes_since_last_activity(self) -> float:
        """Minutes since the last recorded activity, inf if never active."""
        last_active = self._profile.last_active_timestamp
        if last_active == 0:
            return float("inf")
        return (self._clock() - last_active) / MINUTE_MS

    def is_likely_active_now(self) -> bool:
        """True when both the current hour and weekday score above 0.4."""
        now = self._clock()
        return (
            self.get_hour_score(local_hour(now)) > LIKELY_ACTIVE_THRESHOLD
            and self.get_day_score(local_day_of_week(now)) > LIKELY_ACTIVE_THRESHOLD
        )

    async def clear(self) -> None:
        """Drop all engagement history."""
        self._events = []
        self._profile = EngagementProfile.default()
        self._session_start = None
        await self._json.remove(ENGAGEMENT_EVENTS_KEY)
        logger.info("engagement_data_cleared")

    # Persistence

    async def load_events(self) -> None:
        """Load the persisted event log. Unreadable data means a cold start."""
        stored = await self._json.load(ENGAGEMENT_EVENTS_KEY, default=[])
        try:
            events = [EngagementEvent.model_validate(item) for item in stored]
        except (ValidationError, TypeError) as e:
            logger.warning("engagement_events_invalid", error=str(e))
            events = []

        self._events = events[-self.settings.engagement_max_events:]
        logger.info("engagement_events_loaded", count=len(self._events))

    async def save_events(self) -> bool:
        ok = await self._json.save(
            ENGAGEMENT_EVENTS_KEY,
            [event.model_dump(mode="json") for event in self._events],
        )
        if ok:
            logger.debug("engagement_events_saved", count=len(self._events))
        return ok
