"""Device, location and point-in-time context models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class AppState(str, Enum):
    """Foreground state of the host application."""

    ACTIVE = "active"
    BACKGROUND = "background"
    INACTIVE = "inactive"


class NetworkType(str, Enum):
    """Current network reachability."""

    WIFI = "wifi"
    CELLULAR = "cellular"
    NONE = "none"
    UNKNOWN = "unknown"


class LocationLabel(str, Enum):
    """Semantic label of a learned or inferred location."""

    HOME = "home"
    WORK = "work"
    COMMUTING = "commuting"
    UNKNOWN = "unknown"


class LocationVisit(BaseModel):
    """A dwell of more than a few minutes at one coordinate."""

    lat: float
    lon: float
    timestamp: int  # ms since epoch when the dwell started
    duration_ms: int


class LocationPattern(BaseModel):
    """A clustered, labeled region derived from visit history."""

    lat: float
    lon: float
    visits: int
    total_duration: int  # ms
    avg_hour: float
    label: LocationLabel = LocationLabel.UNKNOWN


class LocationSample(BaseModel):
    """Most recent raw sample from the geolocation source."""

    lat: float
    lon: float
    timestamp: int


class DeviceTelemetry(BaseModel):
    """Battery and power-save readings; None when the platform has no data."""

    battery_level: Optional[float] = None
    is_low_power_mode: Optional[bool] = None


class NotificationContext(BaseModel):
    """Ephemeral snapshot used for a single scoring request. Never persisted."""

    time_of_day: int  # hour 0-23
    day_of_week: int  # 0=Sunday to 6=Saturday
    is_quiet_hours: bool = False
    app_state: AppState = AppState.ACTIVE
    battery_level: float = 0.8
    is_low_power_mode: bool = False
    network_type: NetworkType = NetworkType.UNKNOWN
    location_context: LocationLabel = LocationLabel.UNKNOWN
    last_activity_timestamp: int = 0
    minutes_since_last_activity: float = float("inf")
