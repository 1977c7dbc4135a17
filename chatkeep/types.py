"""Type aliases and enums for chatkeep."""
from __future__ import annotations

from enum import Enum
from typing import NewType

# Semantic ID types - provides compile-time distinction
ConversationId = NewType("ConversationId", str)
MessageId = NewType("MessageId", str)
AttachmentId = NewType("AttachmentId", str)


class ProviderName(str, Enum):
    """Hosted chat services we know how to sync."""
    CHATGPT = "chatgpt"
    CLAUDE = "claude"
    PERPLEXITY = "perplexity"

    @classmethod
    def from_string(cls, value: str | None) -> ProviderName:
        """Normalize a provider string to the enum.

        Raises:
            ValueError: for an empty or unknown provider name.
        """
        if not value:
            raise ValueError("Provider name cannot be empty")
        normalized = value.lower().strip()
        # Handle aliases
        if normalized in ("gpt", "openai"):
            return cls.CHATGPT
        if normalized in ("claude-ai", "anthropic"):
            return cls.CLAUDE
        if normalized in ("pplx",):
            return cls.PERPLEXITY
        return cls(normalized)

    def __str__(self) -> str:
        return self.value


class ProviderStatus(str, Enum):
    """Connection/sync state of a provider as shown to the operator."""
    CONNECTED = "connected"
    SYNCING = "syncing"
    TIMEOUT = "timeout"
    LOGGED_OUT = "logged_out"
    ERROR = "error"
    DISCONNECTED = "disconnected"

    def __str__(self) -> str:
        return self.value


class ProgressPhase(str, Enum):
    SYNCING = "syncing"
    COUNTING = "counting"
    DOWNLOADING = "downloading"
    EXPORTING = "exporting"

    def __str__(self) -> str:
        return self.value


class AttachmentKind(str, Enum):
    IMAGE = "image"
    FILE = "file"

    def __str__(self) -> str:
        return self.value
