"""Local persistence for synced conversations."""

from .store import AsyncSQLiteStore, default_db_path

__all__ = ["AsyncSQLiteStore", "default_db_path"]
