import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from chatkeep.config import Settings
from chatkeep.storage import AsyncSQLiteStore


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in ("CHATKEEP_CONFIG", "CHATKEEP_DB_PATH", "CHATKEEP_CHATGPT__ACCESS_TOKEN"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=tmp_path / "chatkeep.db",
        attachments_dir=tmp_path / "attachments",
        retry_attempts=3,
        retry_base_delay=1.0,
    )


@pytest.fixture
def store(tmp_path) -> AsyncSQLiteStore:
    return AsyncSQLiteStore(tmp_path / "chatkeep.db")
