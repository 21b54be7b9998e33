"""Unit tests for push transport handling."""

from unittest.mock import AsyncMock

import pytest

from src.models.notification import NotificationPriority, NotificationType, PermissionStatus
from src.services.push_service import LocalPushTransport, PushService, parse_remote_message
from src.services.storage_service import PUSH_TOKEN_KEY


@pytest.fixture
def transport():
    return LocalPushTransport(token="device-token-1", platform="android")


@pytest.fixture
def service(transport, store, clock):
    return PushService(transport, store, clock)


class TestParseRemoteMessage:
    def test_defaults(self, clock):
        payload = parse_remote_message({}, clock)

        assert payload.id == f"notif_{clock()}"
        assert payload.title == "Notification"
        assert payload.body == ""
        assert payload.type == NotificationType.EVENT
        assert payload.priority == NotificationPriority.NORMAL
        assert payload.created_at == clock()

    def test_priority_derived_from_type(self, clock):
        payload = parse_remote_message({"data": {"type": "match"}}, clock)
        assert payload.priority == NotificationPriority.HIGH

        payload = parse_remote_message({"data": {"type": "promotion"}}, clock)
        assert payload.priority == NotificationPriority.LOW

    def test_explicit_fields(self, clock):
        message = {
            "message_id": "m-1",
            "sent_time": 1700000000000,
            "notification": {"title": "New match", "body": "Say hi"},
            "data": {"type": "match", "priority": "urgent", "user_id": "u1", "nested": {"a": 1}},
        }

        payload = parse_remote_message(message, clock)

        assert payload.id == "m-1"
        assert payload.title == "New match"
        assert payload.body == "Say hi"
        assert payload.priority == NotificationPriority.URGENT
        assert payload.created_at == 1700000000000
        assert payload.data["user_id"] == "u1"
        assert "nested" not in payload.data

    def test_unknown_type_rejected(self, clock):
        with pytest.raises(ValueError):
            parse_remote_message({"data": {"type": "spam"}}, clock)


class TestPermissions:
    @pytest.mark.asyncio
    async def test_request_grants_when_undetermined(self, store, clock):
        transport = LocalPushTransport(permission=PermissionStatus.NOT_DETERMINED)
        service = PushService(transport, store, clock)

        assert await service.check_permission() == PermissionStatus.NOT_DETERMINED
        assert await service.request_permission() == PermissionStatus.GRANTED

    @pytest.mark.asyncio
    async def test_transport_failure_reports_not_determined(self, service, transport):
        transport.check_permission = AsyncMock(side_effect=RuntimeError("bridge gone"))
        transport.request_permission = AsyncMock(side_effect=RuntimeError("bridge gone"))

        assert await service.check_permission() == PermissionStatus.NOT_DETERMINED
        assert await service.request_permission() == PermissionStatus.NOT_DETERMINED


class TestPresent:
    @pytest.mark.asyncio
    async def test_presents_when_granted(self, service, transport, make_payload):
        payload = make_payload()
        assert await service.present(payload) is True
        assert transport.presented == [payload]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [PermissionStatus.DENIED, PermissionStatus.BLOCKED])
    async def test_denied_is_not_presented(self, service, transport, make_payload, status):
        transport.permission = status
        assert await service.present(make_payload()) is False
        assert transport.presented == []

    @pytest.mark.asyncio
    async def test_transport_error_is_reported(self, service, transport, make_payload):
        transport.present = AsyncMock(side_effect=RuntimeError("os refused"))
        assert await service.present(make_payload()) is False


class TestTokens:
    @pytest.mark.asyncio
    async def test_token_is_persisted(self, service, clock):
        assert await service.get_token() == "device-token-1"

        info = await service.get_stored_token_info()
        assert info.token == "device-token-1"
        assert info.platform == "android"
        assert info.updated_at == clock()

    @pytest.mark.asyncio
    async def test_delete_token(self, service, transport, store):
        await service.get_token()
        await service.delete_token()

        assert transport.token is None
        assert await store.get(PUSH_TOKEN_KEY) is None
        assert await service.get_stored_token_info() is None

    @pytest.mark.asyncio
    async def test_no_token_is_not_persisted(self, store, clock):
        service = PushService(LocalPushTransport(), store, clock)
        assert await service.get_token() is None
        assert await service.get_stored_token_info() is None


class TestInboundNotifications:
    @pytest.mark.asyncio
    async def test_messages_are_parsed_for_handler(self, service, transport):
        received = []
        unsubscribe = service.on_notification(received.append)

        await transport.emit({"message_id": "m-1", "data": {"type": "message"}})
        unsubscribe()
        await transport.emit({"message_id": "m-2"})

        assert [p.id for p in received] == ["m-1"]
        assert received[0].priority == NotificationPriority.HIGH

    @pytest.mark.asyncio
    async def test_async_handler(self, service, transport):
        handler = AsyncMock()
        service.on_notification(handler)

        await transport.emit({"message_id": "m-1"})

        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_message_is_dropped(self, service, transport):
        handler = AsyncMock()
        service.on_notification(handler)

        await transport.emit({"data": {"type": "spam"}})

        handler.assert_not_called()
