"""Configuration using Pydantic Settings for automatic env var support.

Values come from (lowest to highest precedence) defaults, ``CHATKEEP_*``
environment variables, and an optional JSON config file. Nested provider
settings use ``__`` as delimiter, e.g. ``CHATKEEP_CLAUDE__SESSION_KEY``.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .lib.json import JSONDecodeError, loads
from .paths import config_home, default_attachments_dir, default_db_path
from .types import ProviderName

CONFIG_ENV = "CHATKEEP_CONFIG"


class ProviderSettings(BaseModel):
    """Settings shared by every provider."""

    enabled: bool = Field(default=True)
    page_size: int = Field(default=20, ge=1, le=200)
    user_agent: str = Field(
        default="Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0 Safari/537.36"
    )


class ChatGPTSettings(ProviderSettings):
    page_size: int = Field(default=50, ge=1, le=200)
    base_url: str = Field(default="https://chatgpt.com")
    access_token: Optional[str] = Field(default=None)
    device_id: Optional[str] = Field(default=None)
    language: str = Field(default="en-US")


class ClaudeSettings(ProviderSettings):
    page_size: int = Field(default=30, ge=1, le=200)
    base_url: str = Field(default="https://claude.ai")
    session_key: Optional[str] = Field(default=None)
    organization_id: Optional[str] = Field(default=None)


class PerplexitySettings(ProviderSettings):
    page_size: int = Field(default=20, ge=1, le=200)
    base_url: str = Field(default="https://www.perplexity.ai")
    cookie: Optional[str] = Field(default=None)
    api_version: str = Field(default="2.18")


class Settings(BaseSettings):
    """Main application configuration."""

    db_path: Path = Field(default_factory=default_db_path)
    attachments_dir: Path = Field(default_factory=default_attachments_dir)

    poll_interval_seconds: float = Field(default=300.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    failed_retry_limit: int = Field(default=3, ge=0)
    safety_ceiling: int = Field(default=10_000, ge=1)
    download_attachments: bool = Field(default=False)
    request_timeout: float = Field(default=30.0, gt=0)

    chatgpt: ChatGPTSettings = Field(default_factory=ChatGPTSettings)
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    perplexity: PerplexitySettings = Field(default_factory=PerplexitySettings)

    config_path: Optional[Path] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="CHATKEEP_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("db_path", "attachments_dir", "config_path", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v

    def provider_settings(self, name: ProviderName) -> ProviderSettings:
        return getattr(self, name.value)

    @classmethod
    def from_json_file(cls, path: Path) -> Settings:
        """Load configuration from a JSON file layered over env vars and defaults.

        Raises:
            ConfigError: when the file cannot be read, parsed or validated.
        """
        try:
            data = loads(path.read_bytes())
        except OSError as exc:
            raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
        except JSONDecodeError as exc:
            raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

        data.pop("config_path", None)
        try:
            return cls(**data, config_path=path)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc

    @classmethod
    def load(cls, path: Path | None = None) -> Settings:
        """Load configuration from an explicit path, ``$CHATKEEP_CONFIG`` or the XDG config dir."""
        if path is not None:
            return cls.from_json_file(Path(path).expanduser())

        env_path = os.environ.get(CONFIG_ENV)
        if env_path:
            return cls.from_json_file(Path(env_path).expanduser())

        default_path = config_home() / "config.json"
        if default_path.exists():
            return cls.from_json_file(default_path)

        try:
            return cls()
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration in environment: {exc}") from exc

