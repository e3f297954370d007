from __future__ import annotations

from typing import Any


class NotificationError(RuntimeError):
    """Base error for the unread notification service."""


class RemoteStoreError(NotificationError):
    """Raised when the data store rejects a query or a bulk update."""

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


__all__ = ["NotificationError", "RemoteStoreError"]
