"""Push delivery: transport abstraction, permission and token handling."""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from pydantic import ValidationError

from src.models.notification import (
    NotificationPayload,
    NotificationPriority,
    NotificationType,
    PermissionStatus,
    PushTokenInfo,
)
from src.services.clock import Clock, now_ms
from src.services.storage_service import PUSH_TOKEN_KEY, JsonStore, KeyValueStore

logger = structlog.get_logger(__name__)

NotificationHandler = Callable[[NotificationPayload], Union[None, Awaitable[None]]]

# Priority assumed for inbound messages that do not carry one
DEFAULT_TYPE_PRIORITIES = {
    NotificationType.MATCH: NotificationPriority.HIGH,
    NotificationType.MESSAGE: NotificationPriority.HIGH,
    NotificationType.NEARBY_USER: NotificationPriority.NORMAL,
    NotificationType.EVENT: NotificationPriority.NORMAL,
    NotificationType.PROMOTION: NotificationPriority.LOW,
}


class PushTransport(ABC):
    """OS-level notification presentation. Never decides delivery timing."""

    @abstractmethod
    async def request_permission(self) -> PermissionStatus:
        """Prompt the user for permission."""

    @abstractmethod
    async def check_permission(self) -> PermissionStatus:
        """Current permission without prompting."""

    @abstractmethod
    async def get_token(self) -> Optional[str]:
        """Device push token, if one is available."""

    @abstractmethod
    async def delete_token(self) -> None:
        """Invalidate the device push token."""

    @abstractmethod
    async def present(self, payload: NotificationPayload) -> None:
        """Show an already-decided notification to the user."""

    @abstractmethod
    def on_notification(self, handler: Callable[[dict], Any]) -> Callable[[], None]:
        """Register a handler for inbound raw messages. Returns an unsubscribe function."""


class LocalPushTransport(PushTransport):
    """In-process transport that records presented notifications.

    Used by hosts that render notifications themselves and in tests.
    """

    def __init__(
        self,
        permission: PermissionStatus = PermissionStatus.GRANTED,
        token: Optional[str] = None,
        platform: Optional[str] = None,
    ):
        self.permission = permission
        self.token = token
        self.platform = platform
        self.presented: list[NotificationPayload] = []
        self._handlers: list[Callable[[dict], Any]] = []

    async def request_permission(self) -> PermissionStatus:
        if self.permission == PermissionStatus.NOT_DETERMINED:
            self.permission = PermissionStatus.GRANTED
        return self.permission

    async def check_permission(self) -> PermissionStatus:
        return self.permission

    async def get_token(self) -> Optional[str]:
        return self.token

    async def delete_token(self) -> None:
        self.token = None

    async def present(self, payload: NotificationPayload) -> None:
        self.presented.append(payload)

    def on_notification(self, handler: Callable[[dict], Any]) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def emit(self, message: dict) -> None:
        """Simulate an inbound push message."""
        for handler in list(self._handlers):
            result = handler(message)
            if inspect.isawaitable(result):
                await result


def parse_remote_message(message: dict, clock: Clock = now_ms) -> NotificationPayload:
    """Convert a raw inbound push message into a NotificationPayload.

    Missing fields get defaults: title "Notification", type "event", and a
    priority derived from the type.

    Raises:
        ValueError: If the message names an unknown type or priority
    """
    notification = message.get("notification") or {}
    data = dict(message.get("data") or {})

    notification_type = NotificationType(data.get("type") or NotificationType.EVENT.value)
    priority = data.get("priority") or DEFAULT_TYPE_PRIORITIES[notification_type].value

    return NotificationPayload(
        id=message.get("message_id") or message.get("id") or f"notif_{clock()}",
        title=notification.get("title") or data.get("title") or "Notification",
        body=notification.get("body") or data.get("body") or "",
        type=notification_type,
        priority=priority,
        data={k: v for k, v in data.items() if isinstance(v, (str, int, float, bool))},
        created_at=message.get("sent_time") or clock(),
    )


class PushService:
    """Wraps a PushTransport with permission checks and token persistence."""

    def __init__(
        self,
        transport: PushTransport,
        store: KeyValueStore,
        clock: Clock = now_ms,
    ):
        self.transport = transport
        self._json = JsonStore(store)
        self._clock = clock

    async def request_permission(self) -> PermissionStatus:
        try:
            status = PermissionStatus(await self.transport.request_permission())
        except Exception as e:
            logger.error("push_permission_request_failed", error=str(e))
            return PermissionStatus.NOT_DETERMINED
        logger.info("push_permission_requested", status=status.value)
        return status

    async def check_permission(self) -> PermissionStatus:
        try:
            return PermissionStatus(await self.transport.check_permission())
        except Exception as e:
            logger.error("push_permission_check_failed", error=str(e))
            return PermissionStatus.NOT_DETERMINED

    async def get_token(self) -> Optional[str]:
        """Fetch the device token and remember it."""
        try:
            token = await self.transport.get_token()
        except Exception as e:
            logger.error("push_get_token_failed", error=str(e))
            return None

        if token:
            info = PushTokenInfo(
                token=token,
                updated_at=self._clock(),
                platform=getattr(self.transport, "platform", None),
            )
            await self._json.save(PUSH_TOKEN_KEY, info.model_dump(mode="json"))
        return token

    async def get_stored_token_info(self) -> Optional[PushTokenInfo]:
        stored = await self._json.load(PUSH_TOKEN_KEY, default=None)
        if stored is None:
            return None
        try:
            return PushTokenInfo.model_validate(stored)
        except ValidationError:
            return None

    async def delete_token(self) -> None:
        try:
            await self.transport.delete_token()
        except Exception as e:
            logger.error("push_delete_token_failed", error=str(e))
            return
        await self._json.remove(PUSH_TOKEN_KEY)
        logger.info("push_token_deleted")

    async def present(self, payload: NotificationPayload) -> bool:
        """Present a notification.

        Returns:
            False when permission is denied or the transport fails
        """
        status = await self.check_permission()
        if status in (PermissionStatus.DENIED, PermissionStatus.BLOCKED):
            logger.warning(
                "push_permission_denied",
                notification_id=payload.id,
                status=status.value,
            )
            return False

        try:
            await self.transport.present(payload)
        except Exception as e:
            logger.error("push_present_failed", notification_id=payload.id, error=str(e))
            return False
        return True

    def on_notification(self, handler: NotificationHandler) -> Callable[[], None]:
        """Subscribe to inbound notifications, parsed into payloads."""

        async def dispatch(message: dict) -> None:
            try:
                payload = parse_remote_message(message, self._clock)
            except (ValidationError, ValueError) as e:
                logger.warning("push_message_invalid", error=str(e))
                return
            result = handler(payload)
            if inspect.isawaitable(result):
                await result

        return self.transport.on_notification(dispatch)
