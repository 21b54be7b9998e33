"""User-controlled notification settings."""

import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from src.models.notification import NotificationType

_HH_MM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_hh_mm(value: str) -> int:
    """Convert an "HH:mm" string to minutes since midnight.

    Raises:
        ValueError: If the string is not a valid 24-hour time
    """
    match = _HH_MM.match(value)
    if not match:
        raise ValueError(f"time must be in HH:mm format, got '{value}'")
    return int(match.group(1)) * 60 + int(match.group(2))


class FrequencyPreference(str, Enum):
    """How often the user wants to hear from the app."""

    ALL = "all"
    IMPORTANT = "important"
    MINIMAL = "minimal"


class QuietHoursConfig(BaseModel):
    """Daily window during which non-urgent notifications are held back."""

    enabled: bool = False
    start: str = "22:00"
    end: str = "07:00"

    @field_validator("start", "end")
    @classmethod
    def valid_time(cls, v: str) -> str:
        """Validate HH:mm format."""
        parse_hh_mm(v)
        return v

    @property
    def start_minutes(self) -> int:
        return parse_hh_mm(self.start)

    @property
    def end_minutes(self) -> int:
        return parse_hh_mm(self.end)


def _default_types() -> dict[NotificationType, bool]:
    return {
        NotificationType.NEARBY_USER: True,
        NotificationType.MESSAGE: True,
        NotificationType.MATCH: True,
        NotificationType.EVENT: True,
        NotificationType.PROMOTION: False,
    }


class NotificationSettings(BaseModel):
    """Per-device notification preferences."""

    enabled: bool = True
    types: dict[NotificationType, bool] = Field(default_factory=_default_types)
    quiet_hours: QuietHoursConfig = Field(default_factory=QuietHoursConfig)
    frequency: FrequencyPreference = FrequencyPreference.ALL
    sound: bool = True
    vibration: bool = True
    smart_timing: bool = True

    @field_validator("types")
    @classmethod
    def fill_missing_types(cls, v: dict[NotificationType, bool]) -> dict[NotificationType, bool]:
        """Types missing from stored settings fall back to their defaults."""
        merged = _default_types()
        merged.update(v)
        return merged

    def is_type_enabled(self, notification_type: NotificationType) -> bool:
        return self.types.get(notification_type, False)
