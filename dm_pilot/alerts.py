"""
Centralized Alert Management System

Every operationally significant event (token refresh failure, token expired
during sync, dead letter enqueue failure or exhaustion, HRN escalation)
goes through one AlertManager, which always logs and optionally forwards
to a Telegram chat.

Features:
- Severity-based filtering (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- Notification channels: logging (always), Telegram (optional)
- Configurable minimum alert level for Telegram

Usage:
    from dm_pilot.alerts import AlertManager, AlertLevel, TelegramNotifier

    alerts = AlertManager(telegram=TelegramNotifier(token, chat_id), min_telegram_level="ERROR")

    await alerts.notify(AlertLevel.INFO, "service_started", "DM Pilot started")
    await alerts.error("token_refresh_failed", "Refresh failed", integration_id="...")
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class AlertLevel(Enum):
    """Alert severity levels."""
    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3
    CRITICAL = 4


_LEVEL_ICONS = {
    AlertLevel.DEBUG: "🔎",
    AlertLevel.INFO: "ℹ️",
    AlertLevel.WARNING: "⚠️",
    AlertLevel.ERROR: "❌",
    AlertLevel.CRITICAL: "🚨",
}


def format_alert(
    level: AlertLevel,
    alert_type: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> str:
    """Render an alert as a Telegram Markdown message."""
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    lines = [
        f"{_LEVEL_ICONS[level]} *{level.name} ALERT*",
        "",
        f"*Type:* `{alert_type}`",
        f"*Time:* {timestamp}",
        f"*Message:* {message}",
    ]

    if details:
        lines.append("")
        lines.append("*Details:*")
        for key, value in details.items():
            if isinstance(value, (dict, list)):
                lines.append(f"```\n{key}: {json.dumps(value, indent=2, default=str)}\n```")
            else:
                lines.append(f"  • {key}: `{value}`")

    return "\n".join(lines)


class TelegramNotifier:
    """Posts alert messages to a single Telegram chat."""

    def __init__(self, bot_token: str, chat_id: str, bot: Optional[Bot] = None) -> None:
        self.chat_id = chat_id
        self.bot = bot or Bot(token=bot_token)
        self._initialized = False

    async def start(self) -> None:
        if not self._initialized:
            await self.bot.initialize()
            self._initialized = True

    async def stop(self) -> None:
        if self._initialized:
            await self.bot.shutdown()
            self._initialized = False

    async def send(self, text: str) -> None:
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=text,
            parse_mode="Markdown",
        )


class AlertManager:
    """
    Centralized alert management with severity-based filtering.

    Telegram failures are logged and never propagate to the caller.
    """

    def __init__(
        self,
        telegram: Optional[TelegramNotifier] = None,
        min_telegram_level: str = "WARNING",
    ) -> None:
        """
        Initialize the AlertManager.

        Args:
            telegram: Optional Telegram channel.
            min_telegram_level: Lowest level forwarded to Telegram.
        """
        self.telegram = telegram
        try:
            self._min_telegram_level = AlertLevel[min_telegram_level.upper()]
        except KeyError:
            logger.warning(
                f"Invalid min_telegram_alert_level '{min_telegram_level}', using WARNING"
            )
            self._min_telegram_level = AlertLevel.WARNING

    async def notify(
        self,
        level: AlertLevel,
        alert_type: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Send a notification with the specified severity level.

        Dispatched to:
        1. Logger (always)
        2. Telegram (if configured and level >= min level)
        """
        self._log_alert(level, alert_type, message, details)

        if self.telegram and level.value >= self._min_telegram_level.value:
            await self._send_telegram_alert(level, alert_type, message, details)

    def _log_alert(
        self,
        level: AlertLevel,
        alert_type: str,
        message: str,
        details: Optional[dict[str, Any]],
    ) -> None:
        log_msg = f"[{alert_type}] {message}"
        if details:
            log_msg += f" | {details}"

        if level == AlertLevel.DEBUG:
            logger.debug(log_msg)
        elif level == AlertLevel.INFO:
            logger.info(log_msg)
        elif level == AlertLevel.WARNING:
            logger.warning(log_msg)
        elif level == AlertLevel.ERROR:
            logger.error(log_msg)
        elif level == AlertLevel.CRITICAL:
            logger.critical(log_msg)

    async def _send_telegram_alert(
        self,
        level: AlertLevel,
        alert_type: str,
        message: str,
        details: Optional[dict[str, Any]],
    ) -> None:
        try:
            await self.telegram.send(format_alert(level, alert_type, message, details))
        except TelegramError as e:
            logger.error(f"Failed to send Telegram alert: {e}")

    async def error(self, error_type: str, message: str, **details) -> None:
        await self.notify(AlertLevel.ERROR, error_type, message, details)

    async def critical(self, error_type: str, message: str, **details) -> None:
        await self.notify(AlertLevel.CRITICAL, error_type, message, details)

    async def warning(self, alert_type: str, message: str, **details) -> None:
        await self.notify(AlertLevel.WARNING, alert_type, message, details)

    async def info(self, alert_type: str, message: str, **details) -> None:
        await self.notify(AlertLevel.INFO, alert_type, message, details)


# Global alert manager instance (initialized in main.py)
_alert_manager: Optional[AlertManager] = None


def initialize_alerts(
    telegram: Optional[TelegramNotifier] = None,
    min_telegram_level: str = "WARNING",
) -> AlertManager:
    """Initialize the process-wide AlertManager used by the entry points."""
    global _alert_manager
    _alert_manager = AlertManager(telegram=telegram, min_telegram_level=min_telegram_level)
    logger.info("AlertManager initialized")
    return _alert_manager


def get_alerts() -> Optional[AlertManager]:
    """Get the global AlertManager instance."""
    return _alert_manager
