"""Unit tests for logging service."""

import json

import structlog

from src.services.logging_service import configure_logging, get_logger, redact_sensitive


class TestRedactSensitive:
    """Tests for redact_sensitive processor."""

    def test_redacts_push_token(self):
        event_dict = {"token": "fcm-abc123", "event": "push_token_saved"}
        result = redact_sensitive(None, None, event_dict)
        assert result["token"] == "REDACTED"
        assert result["event"] == "push_token_saved"

    def test_redacts_device_and_fcm_tokens(self):
        event_dict = {"device_token": "a", "fcm_token": "b", "event": "test"}
        result = redact_sensitive(None, None, event_dict)
        assert result["device_token"] == "REDACTED"
        assert result["fcm_token"] == "REDACTED"

    def test_redacts_secret_in_key_name(self):
        event_dict = {"client_secret": "abc123", "event": "test"}
        result = redact_sensitive(None, None, event_dict)
        assert result["client_secret"] == "REDACTED"

    def test_redacts_password(self):
        event_dict = {"password": "mypassword", "event": "test"}
        result = redact_sensitive(None, None, event_dict)
        assert result["password"] == "REDACTED"

    def test_preserves_non_sensitive_fields(self):
        event_dict = {
            "notification_id": "n-1",
            "score": 0.42,
            "queue_size": 3,
        }
        result = redact_sensitive(None, None, event_dict)
        assert result == {"notification_id": "n-1", "score": 0.42, "queue_size": 3}

    def test_case_insensitive_redaction(self):
        event_dict = {"FCM_TOKEN": "x", "Password": "y"}
        result = redact_sensitive(None, None, event_dict)
        assert result["FCM_TOKEN"] == "REDACTED"
        assert result["Password"] == "REDACTED"


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_get_logger_returns_bound_logger(self):
        configure_logging("INFO")
        logger = get_logger("test_module")
        assert logger is not None
        logger.info("test_event", data="value")

    def test_get_logger_without_name(self):
        configure_logging("INFO")
        assert get_logger() is not None

    def test_console_renderer_configures(self):
        configure_logging("DEBUG", json_output=False)
        get_logger("console").debug("console_event")
        configure_logging("INFO")


class TestLoggingOutput:
    """Tests for rendered log lines."""

    def test_output_is_json_with_token_redacted(self, capsys):
        configure_logging("INFO")
        logger = get_logger("push")

        logger.info("push_token_saved", token="fcm-secret-token", platform="android")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "push_token_saved"
        assert record["token"] == "REDACTED"
        assert record["platform"] == "android"
        assert record["logger_name"] == "push"
        assert "fcm-secret-token" not in line

    def test_filtered_below_level(self, capsys):
        configure_logging("WARNING")
        logger = get_logger("quiet")

        logger.info("should_not_appear")

        assert "should_not_appear" not in capsys.readouterr().out
        configure_logging("INFO")


class TestContextBinding:
    """Tests for contextvars-based binding."""

    def test_bound_context_is_merged(self, capsys):
        configure_logging("INFO")
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(device_id="device-7")
        try:
            get_logger("ctx").info("context_event")
            record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
            assert record["device_id"] == "device-7"
        finally:
            structlog.contextvars.clear_contextvars()
