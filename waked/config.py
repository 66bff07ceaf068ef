"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from waked.errors import ConfigError

DEFAULT_EXES_DIR = "/usr/local/etc/waked"
DEFAULT_UNLOCK_MARKER = "-on-unlock"


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    waked_env: str = "development"
    waked_log_level: str = "INFO"

    # ── Executables ──────────────────────────────────────────────────
    waked_exes_dir: str = DEFAULT_EXES_DIR
    waked_unlock_marker: str = DEFAULT_UNLOCK_MARKER

    # ── Timing (seconds) ─────────────────────────────────────────────
    waked_exec_timeout: float = Field(default=600.0, gt=0)
    waked_retry_delay: float = Field(default=10.0, gt=0)
    waked_locked_retry_delay: float = Field(default=5.0, gt=0)
    waked_kill_grace: float = Field(default=5.0, gt=0)

    # ── Lock-state helpers ───────────────────────────────────────────
    waked_ioreg_path: str = "/usr/sbin/ioreg"
    waked_plutil_path: str = "/usr/bin/plutil"

    # ── Wake detection ───────────────────────────────────────────────
    waked_wake_source: Literal["clock", "signal"] = "clock"
    waked_clock_poll_interval: float = Field(default=5.0, gt=0)
    waked_clock_gap_threshold: float = Field(default=30.0, gt=0)

    @field_validator("waked_exes_dir")
    @classmethod
    def _normalize_exes_dir(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("please specify a directory containing executables to execute")
        return os.path.normpath(os.path.expanduser(value))

    @field_validator("waked_unlock_marker")
    @classmethod
    def _check_marker(cls, value: str) -> str:
        if not value:
            raise ValueError("unlock marker must not be empty")
        return value

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def exes_dir(self) -> Path:
        return Path(self.waked_exes_dir)

    def validate_exes_dir(self) -> Path:
        """Reject an exes dir that exists but is not a directory.

        A missing directory is accepted: each wake event re-lists it, so it
        may be created after startup.
        """
        path = self.exes_dir
        if path.exists() and not path.is_dir():
            raise ConfigError(f"{path} is not a directory")
        return path


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(**overrides: Any) -> Settings:
    """Build Settings with CLI overrides and install it as the singleton.

    Raises ConfigError instead of pydantic's ValidationError so callers
    only deal with one startup failure type.
    """
    global _settings
    try:
        settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as exc:
        messages = "; ".join(err["msg"] for err in exc.errors())
        raise ConfigError(messages) from exc
    settings.validate_exes_dir()
    _settings = settings
    return settings
