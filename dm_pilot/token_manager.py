"""
Token Manager - proactive refresh of long-lived access tokens.

Runs daily against every integration whose token expires within the
refresh window (7 days). Each refresh is independent: a failure leaves the
stored token untouched, is counted and alerted, and is retried by the next
scheduled run. Running twice before expiry is harmless because each run
only acts on tokens still inside the window.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from dm_pilot.alerts import AlertManager
from dm_pilot.graph_client import GraphAPIError
from dm_pilot.instagram import InstagramAPI
from dm_pilot.models import Integration, RefreshedToken
from dm_pilot.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_WINDOW = timedelta(days=7)


@dataclass
class RefreshReport:
    checked: int = 0
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[str] = field(default_factory=list)


class TokenManager:
    """Finds expiring tokens and swaps them for fresh ones."""

    def __init__(
        self,
        db,
        instagram: InstagramAPI,
        alerts: Optional[AlertManager] = None,
        refresh_window: timedelta = DEFAULT_REFRESH_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.instagram = instagram
        self.alerts = alerts or AlertManager()
        self.refresh_window = refresh_window
        self._clock = clock

    async def find_expiring_within(self, window: Optional[timedelta] = None) -> list[Integration]:
        """Integrations whose token expires before now + window."""
        before = self._clock() + (window or self.refresh_window)
        return await self.db.get_expiring_integrations(before)

    async def refresh(self, integration: Integration) -> RefreshedToken:
        """
        Refresh one integration's token and persist it.

        Raises:
            GraphAPIError: When the platform refused the refresh. Nothing
                is written in that case.
        """
        refreshed = await self.instagram.refresh_long_lived_token(integration.access_token)
        await self.db.update_integration_token(
            integration.id, refreshed.access_token, refreshed.expires_at
        )
        logger.info(
            f"Refreshed token for integration {integration.id}, "
            f"expires {refreshed.expires_at.isoformat()}"
        )
        return refreshed

    async def refresh_expiring(self) -> RefreshReport:
        """Refresh every token inside the window. Never raises for a single failure."""
        report = RefreshReport()
        for integration in await self.find_expiring_within():
            report.checked += 1
            if integration.needs_reconnect or not integration.access_token:
                report.skipped += 1
                continue
            try:
                await self.refresh(integration)
                report.refreshed += 1
            except GraphAPIError as e:
                report.failed += 1
                report.failures.append(integration.id)
                await self.alerts.error(
                    "token_refresh_failed",
                    "Access token refresh failed; will retry on the next run",
                    integration_id=integration.id,
                    user_id=integration.user_id,
                    kind=e.kind.value,
                    status=e.status,
                )

        logger.info(
            f"Token refresh run: checked={report.checked} refreshed={report.refreshed} "
            f"failed={report.failed} skipped={report.skipped}"
        )
        return report
