"""User notification settings: validation, mutation and persistence."""

from typing import Any

import structlog
from pydantic import ValidationError

from src.exceptions import InvalidConfigurationError
from src.models.notification import NotificationType
from src.models.settings import (
    FrequencyPreference,
    NotificationSettings,
    QuietHoursConfig,
)
from src.services.storage_service import NOTIFICATION_SETTINGS_KEY, JsonStore, KeyValueStore

logger = structlog.get_logger(__name__)


def _first_error(e: ValidationError) -> tuple[str, str]:
    error = e.errors()[0]
    field = ".".join(str(part) for part in error.get("loc", ())) or "settings"
    return field, error.get("msg", str(e))


class NotificationSettingsService:
    """Owns the user's notification settings.

    Every mutator validates its input and raises InvalidConfigurationError
    before anything reaches the scheduler or scoring engine.
    """

    def __init__(self, store: KeyValueStore):
        self._json = JsonStore(store)
        self._settings = NotificationSettings()

    async def load(self) -> NotificationSettings:
        """Load persisted settings merged over defaults."""
        stored = await self._json.load(NOTIFICATION_SETTINGS_KEY, default=None)
        if stored is None:
            self._settings = NotificationSettings()
            return self.get()

        try:
            merged = {**NotificationSettings().model_dump(mode="json"), **stored}
            self._settings = NotificationSettings.model_validate(merged)
        except (ValidationError, TypeError) as e:
            logger.warning("notification_settings_invalid", error=str(e))
            self._settings = NotificationSettings()
        return self.get()

    async def save(self) -> bool:
        return await self._json.save(
            NOTIFICATION_SETTINGS_KEY, self._settings.model_dump(mode="json")
        )

    def get(self) -> NotificationSettings:
        return self._settings.model_copy(deep=True)

    async def _apply(self, **changes: Any) -> NotificationSettings:
        data = self._settings.model_dump()
        data.update(changes)
        try:
            updated = NotificationSettings.model_validate(data)
        except ValidationError as e:
            field, message = _first_error(e)
            raise InvalidConfigurationError(field, message) from e

        self._settings = updated
        await self.save()
        logger.info("notification_settings_updated", fields=sorted(changes))
        return self.get()

    async def set_enabled(self, enabled: bool) -> NotificationSettings:
        return await self._apply(enabled=bool(enabled))

    async def set_type_enabled(self, notification_type: str, enabled: bool) -> NotificationSettings:
        try:
            key = NotificationType(notification_type)
        except ValueError as e:
            raise InvalidConfigurationError(
                "notification_type", f"unknown type '{notification_type}'"
            ) from e
        types = dict(self._settings.types)
        types[key] = bool(enabled)
        return await self._apply(types=types)

    async def set_quiet_hours(self, quiet_hours: QuietHoursConfig | dict) -> NotificationSettings:
        if isinstance(quiet_hours, QuietHoursConfig):
            quiet_hours = quiet_hours.model_dump()
        return await self._apply(quiet_hours=quiet_hours)

    async def toggle_quiet_hours(self, enabled: bool) -> NotificationSettings:
        quiet_hours = self._settings.quiet_hours.model_dump()
        quiet_hours["enabled"] = bool(enabled)
        return await self._apply(quiet_hours=quiet_hours)

    async def set_quiet_hours_start(self, start: str) -> NotificationSettings:
        quiet_hours = self._settings.quiet_hours.model_dump()
        quiet_hours["start"] = start
        return await self._apply(quiet_hours=quiet_hours)

    async def set_quiet_hours_end(self, end: str) -> NotificationSettings:
        quiet_hours = self._settings.quiet_hours.model_dump()
        quiet_hours["end"] = end
        return await self._apply(quiet_hours=quiet_hours)

    async def set_frequency(self, frequency: str) -> NotificationSettings:
        try:
            value = FrequencyPreference(frequency)
        except ValueError as e:
            raise InvalidConfigurationError("frequency", f"unknown preference '{frequency}'") from e
        return await self._apply(frequency=value)

    async def set_sound(self, enabled: bool) -> NotificationSettings:
        return await self._apply(sound=bool(enabled))

    async def set_vibration(self, enabled: bool) -> NotificationSettings:
        return await self._apply(vibration=bool(enabled))

    async def set_smart_timing(self, enabled: bool) -> NotificationSettings:
        return await self._apply(smart_timing=bool(enabled))

    async def update(self, **changes: Any) -> NotificationSettings:
        """Bulk update. Unknown fields are rejected."""
        unknown = set(changes) - set(NotificationSettings.model_fields)
        if unknown:
            raise InvalidConfigurationError(
                "settings", f"unknown fields {sorted(unknown)}"
            )
        return await self._apply(**changes)

    async def reset(self) -> NotificationSettings:
        self._settings = NotificationSettings()
        await self.save()
        logger.info("notification_settings_reset")
        return self.get()
