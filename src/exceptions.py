"""Exception types raised by the notification engine."""

from typing import Optional


class NotificationEngineError(Exception):
    """Base class for engine errors."""


class PersistenceError(NotificationEngineError):
    """Raised when the key-value store cannot be read or written.

    Components never let this escape: a failed read means "no prior state"
    and a failed write is retried on the next save trigger.

    Attributes:
        key: Storage key involved in the failed operation
        operation: "get", "set" or "remove"
    """

    def __init__(self, key: str, operation: str, cause: Optional[BaseException] = None):
        self.key = key
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"storage {operation} failed for key '{key}'{detail}")


class InvalidConfigurationError(NotificationEngineError, ValueError):
    """Raised at the settings boundary for malformed user configuration.

    Attributes:
        field: Name of the offending setting
    """

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"invalid {field}: {message}")
