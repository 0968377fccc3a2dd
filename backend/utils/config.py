"""
ScriptWatch Configuration Module.

Settings for the script loader, the file watcher, the operator API and
logging, read from the environment and an optional .env file.
Requires Python 3.11+.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Nested settings read os.environ directly, so .env must be loaded first
_env_file = Path(__file__).parent.parent / ".env"
load_dotenv(_env_file if _env_file.exists() else None)


def _split_csv(value: str | list[str]) -> list[str]:
    """Accept either a list or a comma-separated environment string."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class ScriptSettings(BaseSettings):
    """Where scripts live and how often they are reconciled."""

    model_config = SettingsConfigDict(env_prefix="SCRIPTS_")

    directory: Path = Field(default=Path("scripts.d"), description="Root directory for script files")
    init_script: str = Field(default="init.py", description="Script watched at startup")
    poll_interval_ms: int = Field(default=1000, ge=10, description="Delay between reconciliation cycles")
    preload_max_cycles: int = Field(default=64, ge=1, le=10_000)
    executor_thread_name: str = Field(default="script-sync")

    @field_validator("init_script")
    @classmethod
    def init_script_is_relative(cls, v: str) -> str:
        if Path(v).is_absolute():
            raise ValueError("init_script must be relative to the script directory")
        return v


class WatcherSettings(BaseSettings):
    """Directory watch and debounce settings."""

    model_config = SettingsConfigDict(env_prefix="WATCHER_")

    enabled: bool = Field(default=True)
    recursive: bool = Field(default=True)
    debounce_delay_ms: int = Field(default=100, ge=0, le=5000)

    # Editor swap files and VCS metadata never hold scripts
    ignore_patterns: list[str] = Field(
        default=[
            "*.pyc",
            "__pycache__",
            "*.swp",
            "*.swx",
            "*~",
            ".#*",
            ".git",
            ".DS_Store",
        ],
    )

    @field_validator("ignore_patterns", mode="before")
    @classmethod
    def parse_ignore_patterns(cls, v: str | list[str]) -> list[str]:
        return _split_csv(v)


class APISettings(BaseSettings):
    """Operator API settings."""

    model_config = SettingsConfigDict(env_prefix="API_")

    cors_origins: list[str] = Field(default=["http://localhost:3000", "http://127.0.0.1:3000"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        return _split_csv(v)


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO")
    format: Literal["json", "console"] = Field(default="json")
    file_path: Path | None = Field(default=None)

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """All ScriptWatch settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="ScriptWatch")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")

    scripts: ScriptSettings = Field(default_factory=ScriptSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    api: APISettings = Field(default_factory=APISettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings, read once on first use."""
    return Settings()
