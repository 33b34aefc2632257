"""
Settings for the coverage sync service.

Values come from three layers, later ones winning:
- field defaults below
- an optional YAML mapping (path in CS_CONFIG_FILE) whose values may use
  ${VAR_NAME} or ${VAR_NAME:default} placeholders
- environment variables listed in ENV_FIELDS
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

from .core.timeframes import DAY_MS


DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "coverage.db")

ENV_FIELDS = {
    "CS_DB_PATH": "db_path",
    "CS_SCHEDULER_ENABLED": "scheduler_enabled",
    "CS_TICK_MS": "tick_ms",
    "CS_CHUNK_DAYS": "chunk_days",
    "CS_JOBS_PER_TICK": "jobs_per_tick",
    "CS_LIMIT_PER_CALL": "limit_per_call",
    "CS_SLEEP_MS": "sleep_ms",
    "CS_MAX_CONSECUTIVE_ERRORS": "max_consecutive_errors",
    "CS_MAX_FAILED_ATTEMPTS": "max_failed_attempts",
    "CS_DEFAULT_EXCHANGE": "default_exchange",
    "CS_LOG_LEVEL": "log_level",
    "CS_LOG_FILE": "log_file",
    "CS_LOG_MAX_BYTES": "log_max_bytes",
    "CS_LOG_BACKUP_COUNT": "log_backup_count",
    "EXCHANGE_API_KEY": "exchange_api_key",
    "EXCHANGE_SECRET": "exchange_secret",
    "EXCHANGE_SANDBOX": "exchange_sandbox",
    "OPENALGO_API_KEY": "openalgo_api_key",
    "OPENALGO_BASE_URL": "openalgo_base_url",
    "OPENALGO_EXCHANGE": "openalgo_exchange",
}


class Settings(BaseModel):
    """Runtime configuration for storage, scheduling and exchange access."""

    db_path: str = Field(default=DEFAULT_DB_PATH, description="SQLite database path")
    scheduler_enabled: bool = Field(default=True, description="Start the tick timer with the app")
    tick_ms: int = Field(default=15_000, gt=0, description="Timer interval between ticks")
    chunk_days: int = Field(default=30, gt=0, description="Width of one planned job")
    jobs_per_tick: int = Field(default=1, ge=1, description="Jobs drained per tick")
    limit_per_call: int = Field(default=1000, gt=0, description="Candles requested per source call")
    sleep_ms: int = Field(default=250, ge=0, description="Pause between source calls")
    max_consecutive_errors: int | None = Field(
        default=None,
        description="Source errors in a row before a fetch gives up; unset retries forever",
    )
    max_failed_attempts: int | None = Field(
        default=None, description="Failed jobs at one cursor before a manifest is skipped"
    )
    default_exchange: str = Field(default="binance", description="Exchange for requests that name none")
    log_level: str = Field(default="INFO", description="Root logger level")
    log_file: str | None = Field(default=None, description="Rotating log file, console only when unset")
    log_max_bytes: int = Field(default=10 * 1024 * 1024, gt=0, description="Log file size before rotation")
    log_backup_count: int = Field(default=5, ge=0, description="Rotated log files kept")
    exchange_api_key: str | None = None
    exchange_secret: str | None = None
    exchange_sandbox: bool = False
    openalgo_api_key: str | None = None
    openalgo_base_url: str = "http://127.0.0.1:8800"
    openalgo_exchange: str = "NSE"

    @field_validator("max_consecutive_errors", "max_failed_attempts", mode="before")
    @classmethod
    def parse_optional_limit(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("", "none", "unbounded"):
            return None
        return value

    @field_validator("max_consecutive_errors", "max_failed_attempts")
    @classmethod
    def validate_optional_limit(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("limit must be at least 1 or unset")
        return value

    @field_validator("default_exchange")
    @classmethod
    def normalize_exchange(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return level

    @property
    def chunk_ms(self) -> int:
        return self.chunk_days * DAY_MS


def substitute_env_vars(config_str: str) -> str:
    """
    Substitute environment variables in config string.

    Args:
        config_str: Configuration string with ${VAR_NAME} placeholders

    Returns:
        Configuration string with environment variables substituted
    """
    pattern = r"\$\{([^}]+)\}"

    def replacer(match):
        var_name = match.group(1)
        if ":" in var_name:
            var_name, default_value = var_name.split(":", 1)
            return os.getenv(var_name, default_value)
        return os.getenv(var_name, match.group(0))

    return re.sub(pattern, replacer, config_str)


def _read_yaml_mapping(config_path: str) -> dict[str, Any]:
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, "r", encoding="utf-8") as f:
        config_content = f.read()

    config_data = yaml.safe_load(substitute_env_vars(config_content)) or {}

    if not isinstance(config_data, dict):
        raise ValueError("Configuration file must contain a YAML mapping")

    return config_data


def load_settings(
    config_path: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    path = config_path or env.get("CS_CONFIG_FILE")
    if path:
        data.update(_read_yaml_mapping(path))

    for env_name, field_name in ENV_FIELDS.items():
        value = env.get(env_name)
        if value is not None and value != "":
            data[field_name] = value

    return Settings(**data)
