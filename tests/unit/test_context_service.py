"""Unit tests for context snapshots and quiet-hours evaluation."""

import math
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.models.context import AppState, DeviceTelemetry, LocationLabel, NetworkType
from src.models.settings import QuietHoursConfig
from src.services.context_service import (
    ContextService,
    DeviceTelemetrySource,
    StaticTelemetrySource,
    minutes_in_quiet_hours,
)
from src.services.engagement_service import EngagementService
from src.services.location_service import LocationService

OVERNIGHT = QuietHoursConfig(enabled=True, start="22:00", end="07:00")


@pytest.fixture
def engagement(store, test_settings, clock):
    return EngagementService(store, test_settings, clock)


@pytest.fixture
def location(store, test_settings, clock):
    return LocationService(store, test_settings, clock)


class TestQuietHours:
    @pytest.mark.parametrize(
        "minutes,expected",
        [
            (23 * 60 + 30, True),
            (3 * 60, True),
            (22 * 60, True),
            (7 * 60, False),
            (12 * 60, False),
        ],
    )
    def test_overnight_window(self, minutes, expected):
        assert minutes_in_quiet_hours(OVERNIGHT, minutes) is expected

    def test_same_day_window(self):
        config = QuietHoursConfig(enabled=True, start="13:00", end="15:00")
        assert minutes_in_quiet_hours(config, 14 * 60) is True
        assert minutes_in_quiet_hours(config, 15 * 60) is False
        assert minutes_in_quiet_hours(config, 12 * 60 + 59) is False

    def test_disabled_never_quiet(self):
        config = QuietHoursConfig(enabled=False, start="00:00", end="23:59")
        assert minutes_in_quiet_hours(config, 12 * 60) is False

    def test_equal_start_and_end_is_empty(self):
        config = QuietHoursConfig(enabled=True, start="08:00", end="08:00")
        assert minutes_in_quiet_hours(config, 8 * 60) is False

    def test_service_uses_local_clock(self, location, engagement, test_settings, clock):
        service = ContextService(location, engagement, settings=test_settings, clock=clock)

        clock.set(datetime(2024, 5, 15, 23, 30))
        assert service.is_in_quiet_hours(OVERNIGHT) is True
        assert service.is_in_quiet_hours(OVERNIGHT, clock.at(datetime(2024, 5, 15, 12, 0))) is False


class TestCurrentContext:
    @pytest.mark.asyncio
    async def test_snapshot_fields(self, location, engagement, test_settings, clock):
        telemetry = StaticTelemetrySource(network_type=NetworkType.WIFI)
        service = ContextService(location, engagement, telemetry, test_settings, clock)
        await service.initialize()

        context = await service.get_current_context()

        assert context.time_of_day == 14
        assert context.day_of_week == 3
        assert context.is_quiet_hours is False
        assert context.app_state == AppState.ACTIVE
        assert context.network_type == NetworkType.WIFI
        assert context.battery_level == 0.8
        assert context.is_low_power_mode is False
        assert context.location_context == LocationLabel.UNKNOWN
        assert math.isinf(context.minutes_since_last_activity)

    @pytest.mark.asyncio
    async def test_quiet_hours_flag(self, location, engagement, test_settings, clock):
        service = ContextService(location, engagement, settings=test_settings, clock=clock)
        config = QuietHoursConfig(enabled=True, start="13:00", end="15:00")

        context = await service.get_current_context(config)

        assert context.is_quiet_hours is True

    @pytest.mark.asyncio
    async def test_reported_telemetry_is_used(self, location, engagement, test_settings, clock):
        telemetry = StaticTelemetrySource(
            network_type=NetworkType.CELLULAR, battery_level=0.15, low_power_mode=True
        )
        service = ContextService(location, engagement, telemetry, test_settings, clock)
        await service.refresh_network()

        context = await service.get_current_context()

        assert context.network_type == NetworkType.CELLULAR
        assert context.battery_level == 0.15
        assert context.is_low_power_mode is True

    @pytest.mark.asyncio
    async def test_telemetry_failures_fall_back(self, location, engagement, test_settings, clock):
        telemetry = MagicMock(spec=DeviceTelemetrySource)
        telemetry.get_network_type = AsyncMock(side_effect=RuntimeError("no radio"))
        telemetry.get_battery_level = AsyncMock(side_effect=RuntimeError("no battery api"))
        telemetry.is_low_power_mode = AsyncMock(side_effect=RuntimeError("no power api"))
        service = ContextService(location, engagement, telemetry, test_settings, clock)
        service.set_network_type(NetworkType.WIFI)

        assert await service.refresh_network() == NetworkType.WIFI
        context = await service.get_current_context()

        assert context.battery_level == test_settings.default_battery_level
        assert context.is_low_power_mode is test_settings.default_low_power_mode

    @pytest.mark.asyncio
    async def test_last_known_readings_survive_failed_poll(
        self, location, engagement, test_settings, clock
    ):
        telemetry = StaticTelemetrySource(battery_level=1.4, low_power_mode=True)
        service = ContextService(location, engagement, telemetry, test_settings, clock)

        first = await service.read_telemetry()
        assert first == DeviceTelemetry(battery_level=1.0, is_low_power_mode=True)

        telemetry.get_battery_level = AsyncMock(side_effect=RuntimeError("sensor gone"))
        telemetry.low_power_mode = None

        second = await service.read_telemetry()
        context = await service.get_current_context()

        assert second == first
        assert context.battery_level == 1.0
        assert context.is_low_power_mode is True

    @pytest.mark.asyncio
    async def test_unreported_telemetry_is_none(self, location, engagement, test_settings, clock):
        service = ContextService(location, engagement, settings=test_settings, clock=clock)

        assert await service.read_telemetry() == DeviceTelemetry()

    @pytest.mark.asyncio
    async def test_minutes_since_activity_comes_from_engagement(
        self, location, engagement, test_settings, clock
    ):
        service = ContextService(location, engagement, settings=test_settings, clock=clock)
        engagement.track_feature_used("chat")
        clock.advance(minutes=2)

        context = await service.get_current_context()

        assert context.minutes_since_last_activity == pytest.approx(2.0)
        assert context.last_activity_timestamp == clock() - 2 * 60 * 1000


class TestDeviceState:
    def test_app_state_and_network(self, location, engagement, test_settings, clock):
        service = ContextService(location, engagement, settings=test_settings, clock=clock)

        service.set_app_state(AppState.BACKGROUND)
        service.set_network_type(NetworkType.NONE)

        assert service.get_app_state() == AppState.BACKGROUND
        assert service.get_network_type() == NetworkType.NONE
        assert service.is_connected() is False
