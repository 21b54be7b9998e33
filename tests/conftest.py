"""Pytest configuration and fixtures."""

from datetime import datetime

import pytest

from src.config import Settings
from src.models.notification import NotificationPayload, NotificationPriority, NotificationType
from src.services.clock import MINUTE_MS
from src.services.storage_service import InMemoryStore


def local_ms(dt: datetime) -> int:
    """Epoch ms for a naive local datetime."""
    return int(dt.timestamp() * 1000)


class FakeClock:
    """Controllable clock returning epoch ms."""

    def __init__(self, start: datetime):
        self.now = local_ms(start)

    def __call__(self) -> int:
        return self.now

    @staticmethod
    def at(dt: datetime) -> int:
        return local_ms(dt)

    def set(self, dt: datetime) -> None:
        self.now = local_ms(dt)

    def advance(self, ms: int = 0, minutes: float = 0, hours: float = 0) -> int:
        self.now += int(ms + minutes * MINUTE_MS + hours * 60 * MINUTE_MS)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting Wednesday 2024-05-15 14:00 local time."""
    return FakeClock(datetime(2024, 5, 15, 14, 0))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with a poll interval long enough that the loop never fires."""
    return Settings(
        queue_poll_interval_seconds=3600,
        save_debounce_seconds=3600,
        storage_backend="memory",
    )


@pytest.fixture
def make_payload(clock):
    """Factory for notification payloads stamped with the fake clock."""

    def _make(
        notification_id: str = "n1",
        priority: NotificationPriority = NotificationPriority.NORMAL,
        notification_type: NotificationType = NotificationType.EVENT,
        title: str = "Hello",
    ) -> NotificationPayload:
        return NotificationPayload(
            id=notification_id,
            title=title,
            type=notification_type,
            priority=priority,
            created_at=clock(),
        )

    return _make
