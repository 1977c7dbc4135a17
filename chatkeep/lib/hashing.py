"""Hashing helpers for deterministic identifiers."""

from __future__ import annotations

import hashlib
import unicodedata


def hash_text(text: str) -> str:
    """Hash UTF-8 text to full SHA-256 hex digest (64 chars).

    Applies NFC normalization so visually identical strings hash the same.
    """
    normalized = unicodedata.normalize("NFC", text)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def hash_text_short(text: str, length: int = 16) -> str:
    return hash_text(text)[:length]


def source_part_id(url: str, ordinal: int) -> str:
    """Stable id for the ``ordinal``-th citation of ``url`` within one message."""
    return hash_text_short(f"{ordinal}:{url}", 24)


__all__ = ["hash_text", "hash_text_short", "source_part_id"]
