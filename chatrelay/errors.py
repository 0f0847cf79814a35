"""
Typed failures raised by the chat core.

Every mutation entry point either returns its result object or raises one
of the errors below. Database driver exceptions never cross the store
boundary; the store converts them to StorageError.

Exception Hierarchy:
    ChatRelayError
    ├── ValidationError - malformed inbound event, nothing was written
    ├── NotFoundError - referenced message/contact/viewer is unknown
    └── StorageError - durable store unavailable, caller owns retry
        └── DuplicateMessageError - unique id collision on insert
"""

from typing import Any, Optional


class ChatRelayError(Exception):
    """Base class for all chat core failures."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(ChatRelayError):
    """Inbound event or request is malformed."""


class NotFoundError(ChatRelayError):
    """Referenced entity does not exist."""


class StorageError(ChatRelayError):
    """The durable store failed or is unreachable."""


class DuplicateMessageError(StorageError):
    """
    A message with the same id was inserted concurrently.

    Internal to the ingestion path: the Ingestor turns it into the
    duplicate outcome instead of surfacing it.
    """
