"""Shared filesystem paths and helpers for chatkeep."""

from __future__ import annotations

import os
import re
from hashlib import sha256
from pathlib import Path


def _xdg_path(env_var: str, fallback: Path) -> Path:
    raw = os.environ.get(env_var)
    if raw:
        return Path(raw).expanduser()
    return fallback


def config_home() -> Path:
    return _xdg_path("XDG_CONFIG_HOME", Path.home() / ".config") / "chatkeep"


def data_home() -> Path:
    return _xdg_path("XDG_DATA_HOME", Path.home() / ".local/share") / "chatkeep"


def default_db_path() -> Path:
    """Default database location; read at call time so tests can redirect XDG_DATA_HOME."""
    return data_home() / "chatkeep.db"


def default_attachments_dir() -> Path:
    return data_home() / "attachments"


_SAFE_PATH_COMPONENT_RE = re.compile(r"[^A-Za-z0-9._-]")


def safe_path_component(raw: str, *, fallback: str = "item") -> str:
    """Return a filesystem-safe path component derived from raw input."""
    if raw is None:
        raw = ""
    value = str(raw).strip()
    if not value:
        value = fallback
    has_sep = any(sep in value for sep in (os.sep, os.altsep) if sep)
    safe = _SAFE_PATH_COMPONENT_RE.sub("_", value)
    if safe in {"", ".", ".."}:
        safe = fallback
    if has_sep or safe != value:
        digest = sha256(value.encode("utf-8")).hexdigest()[:16]
        prefix = safe.strip("._-") or fallback
        prefix = prefix[:40]
        return f"{prefix}-{digest}"
    return safe


def safe_filename(raw: str, *, fallback: str = "attachment") -> str:
    """Like safe_path_component, but keeps a short alphanumeric extension at the end."""
    value = str(raw or "").strip()
    stem, dot, suffix = value.rpartition(".")
    if not dot or not stem or not re.fullmatch(r"[A-Za-z0-9]{1,10}", suffix):
        return safe_path_component(value, fallback=fallback)
    return f"{safe_path_component(stem, fallback=fallback)}.{suffix.lower()}"


__all__ = [
    "config_home",
    "data_home",
    "default_db_path",
    "default_attachments_dir",
    "safe_path_component",
    "safe_filename",
]
