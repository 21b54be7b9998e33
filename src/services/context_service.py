"""Context awareness: point-in-time device, time and location snapshot."""

from abc import ABC, abstractmethod
from typing import Optional

import structlog

from src.config import Settings, get_settings
from src.models.context import (
    AppState,
    DeviceTelemetry,
    LocationLabel,
    NetworkType,
    NotificationContext,
)
from src.models.settings import QuietHoursConfig
from src.services.clock import (
    Clock,
    local_day_of_week,
    local_hour,
    local_minutes_of_day,
    now_ms,
)
from src.services.engagement_service import EngagementService
from src.services.location_service import LocationService

logger = structlog.get_logger(__name__)


class DeviceTelemetrySource(ABC):
    """Network reachability and optional battery/power-save readings."""

    @abstractmethod
    async def get_network_type(self) -> NetworkType:
        """Current reachability."""

    async def get_battery_level(self) -> Optional[float]:
        """Battery level in [0, 1], or None if the platform cannot tell."""
        return None

    async def is_low_power_mode(self) -> Optional[bool]:
        """Power-save state, or None if the platform cannot tell."""
        return None


class StaticTelemetrySource(DeviceTelemetrySource):
    """Telemetry with fixed readings, updated by the host when they change."""

    def __init__(
        self,
        network_type: NetworkType = NetworkType.UNKNOWN,
        battery_level: Optional[float] = None,
        low_power_mode: Optional[bool] = None,
    ):
        self.network_type = network_type
        self.battery_level = battery_level
        self.low_power_mode = low_power_mode

    async def get_network_type(self) -> NetworkType:
        return self.network_type

    async def get_battery_level(self) -> Optional[float]:
        return self.battery_level

    async def is_low_power_mode(self) -> Optional[bool]:
        return self.low_power_mode


def minutes_in_quiet_hours(config: QuietHoursConfig, minutes_of_day: int) -> bool:
    """Check a minute-of-day against a quiet-hours window ``[start, end)``.

    Handles overnight windows (e.g., 22:00 to 07:00). Returns False when
    quiet hours are disabled or start equals end.
    """
    if not config.enabled:
        return False

    start = config.start_minutes
    end = config.end_minutes

    if start > end:
        # Overnight window: e.g., 22:00 to 07:00
        return minutes_of_day >= start or minutes_of_day < end
    return start <= minutes_of_day < end


class ContextService:
    """Assembles a NotificationContext from cached device state and telemetry."""

    def __init__(
        self,
        location: LocationService,
        engagement: EngagementService,
        telemetry: Optional[DeviceTelemetrySource] = None,
        settings: Optional[Settings] = None,
        clock: Clock = now_ms,
    ):
        self.settings = settings or get_settings()
        self.location = location
        self.engagement = engagement
        self.telemetry = telemetry or StaticTelemetrySource()
        self._clock = clock
        self._app_state = AppState.ACTIVE
        self._network_type = NetworkType.UNKNOWN
        self._telemetry = DeviceTelemetry()

    async def initialize(self) -> None:
        await self.refresh_network()

    def set_app_state(self, state: AppState) -> None:
        self._app_state = AppState(state)

    def set_network_type(self, network_type: NetworkType) -> None:
        self._network_type = NetworkType(network_type)

    async def refresh_network(self) -> NetworkType:
        """Poll telemetry for reachability, keeping the cached value on failure."""
        try:
            self._network_type = NetworkType(await self.telemetry.get_network_type())
        except Exception as e:
            logger.warning("telemetry_network_failed", error=str(e))
        return self._network_type

    async def read_telemetry(self) -> DeviceTelemetry:
        """Poll battery and power-save state, keeping last known readings on failure.

        Fields stay None until the platform has reported a value.
        """
        try:
            level = await self.telemetry.get_battery_level()
        except Exception as e:
            logger.warning("telemetry_battery_failed", error=str(e))
            level = None
        if level is not None:
            self._telemetry.battery_level = min(1.0, max(0.0, float(level)))

        try:
            low_power = await self.telemetry.is_low_power_mode()
        except Exception as e:
            logger.warning("telemetry_low_power_failed", error=str(e))
            low_power = None
        if low_power is not None:
            self._telemetry.is_low_power_mode = bool(low_power)

        return self._telemetry.model_copy()

    def is_in_quiet_hours(self, config: QuietHoursConfig, now: Optional[int] = None) -> bool:
        """Check whether ``now`` (default: current time) falls in quiet hours."""
        timestamp = self._clock() if now is None else now
        return minutes_in_quiet_hours(config, local_minutes_of_day(timestamp))

    async def get_current_context(
        self, quiet_hours: Optional[QuietHoursConfig] = None
    ) -> NotificationContext:
        """Build a fresh context snapshot for one scoring request."""
        now = self._clock()
        profile = self.engagement.get_profile()
        telemetry = await self.read_telemetry()

        try:
            location_context = self.location.get_current_location_context(now)
        except Exception as e:
            logger.warning("location_context_failed", error=str(e))
            location_context = LocationLabel.UNKNOWN

        return NotificationContext(
            time_of_day=local_hour(now),
            day_of_week=local_day_of_week(now),
            is_quiet_hours=(
                quiet_hours is not None and self.is_in_quiet_hours(quiet_hours, now)
            ),
            app_state=self._app_state,
            battery_level=(
                self.settings.default_battery_level
                if telemetry.battery_level is None
                else telemetry.battery_level
            ),
            is_low_power_mode=(
                self.settings.default_low_power_mode
                if telemetry.is_low_power_mode is None
                else telemetry.is_low_power_mode
            ),
            network_type=self._network_type,
            location_context=location_context,
            last_activity_timestamp=profile.last_active_timestamp,
            minutes_since_last_activity=self.engagement.get_minutes_since_last_activity(),
        )

    def get_app_state(self) -> AppState:
        return self._app_state

    def get_network_type(self) -> NetworkType:
        return self._network_type

    def is_connected(self) -> bool:
        return self._network_type != NetworkType.NONE
