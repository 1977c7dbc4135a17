"""Chatkeep error hierarchy.

All project exceptions inherit from ChatkeepError, enabling:
- ``except ChatkeepError`` at top-level boundaries (CLI, scheduler)
- Fine-grained catches deeper in the stack (``except ProviderAuthError``)

Hierarchy:
    ChatkeepError
    ├── ConfigError
    ├── DatabaseError
    └── SyncError
        ├── RemoteError             # transient; retried per conversation
        │   └── ExtractionError     # provider document did not have the expected shape
        ├── ProviderAuthError       # unauthorized/forbidden; never retried
        └── SyncCancelled           # cooperative cancellation; never retried or persisted
"""

from __future__ import annotations


class ChatkeepError(Exception):
    """Base class for all chatkeep errors."""


class ConfigError(ChatkeepError):
    """Invalid or unreadable configuration."""


class DatabaseError(ChatkeepError):
    """Base class for database errors."""


class SyncError(ChatkeepError):
    """Base class for failures raised while syncing a provider."""


class RemoteError(SyncError):
    """A remote call failed in a way that may succeed on retry."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(RemoteError):
    """A provider document could not be turned into a conversation.

    Usually a sign that the provider changed its format rather than a network blip.
    """


class ProviderAuthError(SyncError):
    """The provider rejected our credentials (HTTP 401/403)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncCancelled(SyncError):
    """Raised when a cancellation token fires during a sync or download loop."""


def is_auth_failure(exc: BaseException) -> bool:
    """Return True when exc signals lost authentication; message text is never inspected."""
    return isinstance(exc, ProviderAuthError)


__all__ = [
    "ChatkeepError",
    "ConfigError",
    "DatabaseError",
    "SyncError",
    "RemoteError",
    "ExtractionError",
    "ProviderAuthError",
    "SyncCancelled",
    "is_auth_failure",
]
