import os
from dataclasses import dataclass
from typing import Any, Optional

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_API_BASE_URL = "https://vaccie.pythonanywhere.com"
MIN_SYNC_INTERVAL_SECONDS = 60


@dataclass
class BotConfig:
    token: str
    guild_id: int
    log_level: str = "INFO"
    database_path: str = "accounts.db"
    api_base_url: str = DEFAULT_API_BASE_URL
    sync_interval_seconds: int = 300
    notification_channel_id: Optional[int] = None
    request_timeout: float = 10.0
    max_retries: int = 3
    backoff_base: float = 2.0
    timezone: str = "Asia/Tokyo"


def _positive_number(data: dict[str, Any], key: str, default: float) -> float:
    raw = data.get(key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{key}' must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"Config '{key}' must be positive, got {raw!r}")
    return value


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    try:
        guild_id = int(data.get("guild_id"))
    except (TypeError, ValueError):
        raise ValueError("Config missing or invalid 'guild_id'") from None

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    database_path = str(data.get("database_path") or "accounts.db")
    api_base_url = str(data.get("api_base_url") or DEFAULT_API_BASE_URL).rstrip("/")

    sync_interval = int(_positive_number(data, "sync_interval_seconds", 300))
    if sync_interval < MIN_SYNC_INTERVAL_SECONDS:
        raise ValueError(
            f"Config 'sync_interval_seconds' must be at least {MIN_SYNC_INTERVAL_SECONDS}"
        )

    channel_raw = data.get("notification_channel_id")
    notification_channel_id = None
    if channel_raw not in (None, ""):
        try:
            notification_channel_id = int(channel_raw)
        except (TypeError, ValueError):
            raise ValueError(
                f"Config 'notification_channel_id' must be an integer, got {channel_raw!r}"
            ) from None

    max_retries_raw = data.get("max_retries", 3)
    try:
        max_retries = int(max_retries_raw)
    except (TypeError, ValueError):
        raise ValueError(
            f"Config 'max_retries' must be an integer, got {max_retries_raw!r}"
        ) from None
    if max_retries < 0:
        raise ValueError("Config 'max_retries' must not be negative")

    return BotConfig(
        token=token,
        guild_id=guild_id,
        log_level=log_level,
        database_path=database_path,
        api_base_url=api_base_url,
        sync_interval_seconds=sync_interval,
        notification_channel_id=notification_channel_id,
        request_timeout=_positive_number(data, "request_timeout", 10.0),
        max_retries=max_retries,
        backoff_base=_positive_number(data, "backoff_base", 2.0),
        timezone=str(data.get("timezone") or "Asia/Tokyo"),
    )
