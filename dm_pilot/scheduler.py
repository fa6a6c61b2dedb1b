"""
Sync Scheduler - decides which integrations are due and when daily jobs run.

Schedule:
    ┌────────────────────────────────────────────────────────────┐
    │ hourly       due-sync scan over all integrations            │
    │ daily 03:00  token refresh for tokens expiring within 7d    │
    │ on demand    sync-now events from the dashboard             │
    └────────────────────────────────────────────────────────────┘

An integration is due for sync when it has never synced, or when
`last_synced_at + interval` has elapsed. The interval comes from the
integration (`sync_interval_hours`) clamped to 5..24 hours, 24 when unset.
Integrations without a usable token (missing, expired, or flagged for
reconnect) are never due.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from dm_pilot.models import Integration

MIN_SYNC_INTERVAL_HOURS = 5
MAX_SYNC_INTERVAL_HOURS = 24
DEFAULT_SYNC_INTERVAL_HOURS = 24


def clamp_sync_interval(hours: Optional[int]) -> int:
    """Clamp a configured sync interval to 5..24 hours (24 when unset)."""
    if hours is None:
        return DEFAULT_SYNC_INTERVAL_HOURS
    return min(MAX_SYNC_INTERVAL_HOURS, max(MIN_SYNC_INTERVAL_HOURS, int(hours)))


def is_sync_due(integration: Integration, now: datetime) -> bool:
    if not integration.access_token or integration.needs_reconnect:
        return False
    if integration.is_expired(now):
        return False
    if integration.last_synced_at is None:
        return True
    interval = timedelta(hours=clamp_sync_interval(integration.sync_interval_hours))
    return integration.last_synced_at + interval <= now


def get_due_sync_integrations(
    integrations: Iterable[Integration],
    now: datetime,
) -> list[Integration]:
    """
    Filter integrations that should be synced now.

    Example:
        >>> due = get_due_sync_integrations(await db.list_integrations(), utcnow())
    """
    return [integration for integration in integrations if is_sync_due(integration, now)]


def next_daily_run(now: datetime, hour: int, minute: int = 0) -> datetime:
    """Next occurrence of `hour:minute` strictly after `now`, in `now`'s timezone."""
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def get_delay_description(run_at: datetime, now: datetime) -> str:
    """Human-readable time until `run_at` (for logs)."""
    seconds = max(0, int((run_at - now).total_seconds()))
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
