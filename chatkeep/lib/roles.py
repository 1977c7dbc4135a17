"""Canonical mapping of provider-specific role names to standard roles."""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    """Canonical conversation roles."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"
    UNKNOWN = "unknown"

    @classmethod
    def normalize(cls, raw: str | None) -> Role:
        """Normalize a provider role string ("human", "model", ...) to a Role.

        Returns UNKNOWN for unrecognized or missing roles.
        """
        lowered = (raw or "").strip().lower()

        if lowered in {"user", "human"}:
            return cls.USER
        if lowered in {"assistant", "model", "ai"}:
            return cls.ASSISTANT
        if lowered in {"system", "developer"}:
            return cls.SYSTEM
        if lowered in {"tool", "function", "tool_use", "tool_result"}:
            return cls.TOOL
        return cls.UNKNOWN

    def __str__(self) -> str:
        return self.value


def normalize_role(raw: str | None) -> str:
    """Normalize a provider role string to a canonical role string."""
    return Role.normalize(raw).value


__all__ = ["Role", "normalize_role"]
