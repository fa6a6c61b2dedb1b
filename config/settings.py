"""
Centralized configuration for DM Pilot.

This module uses Pydantic Settings to load and validate environment variables.
All service configuration is centralized here to avoid scattered config files.

Components never read these values directly: main.py and api.py build the
components and pass the relevant values into their constructors.

Usage:
    from config import get_settings
    settings = get_settings()
    print(settings.ai_model)

Environment Variables:
    See .env.example for all available configuration options.
"""

import logging
from functools import lru_cache
from typing import Any, Dict

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # =========================================================================
    # Instagram Platform
    # =========================================================================
    instagram_graph_url: str = "https://graph.instagram.com"
    instagram_api_version: str = "v23.0"
    instagram_app_secret: str = ""
    instagram_verify_token: str = ""
    webhook_signature_required: bool = True

    # =========================================================================
    # Generation Service (OpenAI-compatible)
    # =========================================================================
    ai_api_key: str
    ai_base_url: str = "https://openrouter.ai/api/v1"
    ai_model: str = "google/gemini-2.0-flash-001"
    ai_fallback_models: list[str] = []

    # =========================================================================
    # Supabase / SQLite fallback
    # =========================================================================
    supabase_url: str = ""
    supabase_key: str = ""
    sqlite_path: str = "dm_pilot.db"

    # =========================================================================
    # Secrets at rest
    # =========================================================================
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    token_encryption_key: str

    # =========================================================================
    # Alerts (optional Telegram channel)
    # =========================================================================
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    min_telegram_alert_level: str = "WARNING"

    # =========================================================================
    # HTTP
    # =========================================================================
    request_timeout_seconds: float = 10.0
    request_max_retries: int = 3

    # =========================================================================
    # Webhook processing
    # =========================================================================
    dedup_window_seconds: int = 30

    # =========================================================================
    # Contact sync
    # =========================================================================
    sync_batch_size: int = 20
    sync_item_delay_ms: int = 200
    sync_batch_delay_ms: int = 1000
    sync_message_limit: int = 10
    sync_min_messages: int = 2
    sync_check_interval_seconds: int = 3600
    sync_default_full: bool = False

    # =========================================================================
    # Token lifecycle
    # =========================================================================
    token_refresh_window_days: int = 7
    token_refresh_hour_utc: int = 3

    # =========================================================================
    # Dead letter queue
    # =========================================================================
    dead_letter_check_interval_seconds: int = 60
    dead_letter_max_retries: int = 5
    dead_letter_send_attempts: int = 2

    # =========================================================================
    # HTTP server
    # =========================================================================
    host: str = "0.0.0.0"
    port: int = 8000

    @model_validator(mode="after")
    def _validate_bounds(self) -> "Settings":
        for key in SettingValidator.SETTINGS_CONFIG:
            SettingValidator.validate_setting(key, getattr(self, key))
        return self

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


class SettingValidator:
    """Bounds for the numeric knobs that are easy to misconfigure."""

    SETTINGS_CONFIG: Dict[str, Dict[str, Any]] = {
        'request_timeout_seconds': {'type': float, 'min': 1.0, 'max': 120.0},
        'request_max_retries': {'type': int, 'min': 1, 'max': 10},
        'dedup_window_seconds': {'type': int, 'min': 0, 'max': 3600},
        'sync_batch_size': {'type': int, 'min': 1, 'max': 100},
        'sync_item_delay_ms': {'type': int, 'min': 0, 'max': 60_000},
        'sync_batch_delay_ms': {'type': int, 'min': 0, 'max': 300_000},
        'sync_message_limit': {'type': int, 'min': 1, 'max': 50},
        'sync_min_messages': {'type': int, 'min': 1, 'max': 50},
        'token_refresh_window_days': {'type': int, 'min': 1, 'max': 59},
        'token_refresh_hour_utc': {'type': int, 'min': 0, 'max': 23},
        'dead_letter_max_retries': {'type': int, 'min': 1, 'max': 50},
        'dead_letter_send_attempts': {'type': int, 'min': 1, 'max': 10},
    }

    @classmethod
    def validate_setting(cls, key: str, value: Any) -> Any:
        """Validate a setting value with a readable error message."""
        if key not in cls.SETTINGS_CONFIG:
            raise ValueError(f"Unknown setting: {key}")

        config = cls.SETTINGS_CONFIG[key]
        expected_type = config['type']

        try:
            value = expected_type(value)
        except (ValueError, TypeError):
            raise ValueError(f"{key} must be a {expected_type.__name__}")

        if 'min' in config and value < config['min']:
            raise ValueError(f"{key}: minimum value is {config['min']}")
        if 'max' in config and value > config['max']:
            raise ValueError(f"{key}: maximum value is {config['max']}")

        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    settings = Settings()
    logger.debug("Settings loaded")
    return settings
