"""
Background Worker - scheduled and on-demand jobs.

Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │                    BACKGROUND WORKER                         │
    ├─────────────────────────────────────────────────────────────┤
    │  sync consumer   : drains sync-now requests {user_id, full}  │
    │  due-sync loop   : hourly, enqueues integrations that are    │
    │                    due (never synced / interval elapsed)     │
    │  token refresh   : daily at 03:00 UTC, refreshes tokens      │
    │                    expiring within 7 days                    │
    │  dead letter     : every minute, retries failed sends        │
    └─────────────────────────────────────────────────────────────┘

Each loop catches and logs its own errors so one failing job never stops
the others. The worker runs as asyncio tasks alongside the HTTP server.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from dm_pilot.alerts import AlertManager
from dm_pilot.dead_letter import DeadLetterProcessor
from dm_pilot.graph_client import GraphAPIError
from dm_pilot.models import ErrorKind
from dm_pilot.scheduler import get_delay_description, get_due_sync_integrations, next_daily_run
from dm_pilot.sync import ContactSyncPipeline, summarize_contacts
from dm_pilot.token_manager import TokenManager
from dm_pilot.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SyncRequest:
    """A "sync-now" event."""

    user_id: str
    full_sync: bool = False


class BackgroundWorker:
    """Owns the sync queue and the periodic loops."""

    def __init__(
        self,
        db,
        sync_pipeline: ContactSyncPipeline,
        token_manager: TokenManager,
        dead_letter: DeadLetterProcessor,
        alerts: Optional[AlertManager] = None,
        sync_check_interval: int = 3600,
        dead_letter_interval: int = 60,
        token_refresh_hour_utc: int = 3,
        default_full_sync: bool = False,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.sync_pipeline = sync_pipeline
        self.token_manager = token_manager
        self.dead_letter = dead_letter
        self.alerts = alerts or AlertManager()
        self.sync_check_interval = sync_check_interval
        self.dead_letter_interval = dead_letter_interval
        self.token_refresh_hour_utc = token_refresh_hour_utc
        self.default_full_sync = default_full_sync
        self._clock = clock
        self._sleep = sleep

        self.queue: asyncio.Queue[SyncRequest] = asyncio.Queue()
        self._pending: dict[str, SyncRequest] = {}
        self._tasks: list[asyncio.Task] = []

    # =========================================================================
    # Jobs
    # =========================================================================

    def request_sync(self, user_id: str, full_sync: Optional[bool] = None) -> bool:
        """
        Queue a sync for `user_id`.

        Returns:
            False when a sync for that user is already waiting. A full
            sync request upgrades the waiting one instead of being dropped.
        """
        full = self.default_full_sync if full_sync is None else full_sync
        pending = self._pending.get(user_id)
        if pending is not None:
            if full and not pending.full_sync:
                pending.full_sync = True
                logger.info(f"Queued sync for user {user_id} upgraded to full sync")
            return False

        request = SyncRequest(user_id=user_id, full_sync=full)
        self._pending[user_id] = request
        self.queue.put_nowait(request)
        return True

    async def sync_now(self, user_id: str, full_sync: bool = False) -> dict[str, Any]:
        """Run one sync and report its outcome."""
        try:
            contacts = await self.sync_pipeline.sync(user_id, full_sync=full_sync)
        except GraphAPIError as e:
            if e.kind != ErrorKind.TOKEN_EXPIRED:
                raise
            return {"status": "token_expired", "user_id": user_id, "contacts": 0}

        summary = summarize_contacts(contacts)
        logger.info(f"Sync for user {user_id}: {summary}")
        return {
            "status": "ok",
            "user_id": user_id,
            "contacts": len(contacts),
            "summary": summary,
        }

    async def enqueue_due_syncs(self) -> int:
        """Queue every integration that is due. Returns how many were queued."""
        integrations = await self.db.list_integrations()
        due = get_due_sync_integrations(integrations, self._clock())
        queued = sum(1 for integration in due if self.request_sync(integration.user_id))
        logger.info(f"Due-sync scan: {len(due)} due, {queued} queued")
        return queued

    # =========================================================================
    # Loops
    # =========================================================================

    async def run_sync_consumer(self) -> None:
        logger.info("Sync consumer started")
        while True:
            request = await self.queue.get()
            self._pending.pop(request.user_id, None)
            try:
                await self.sync_now(request.user_id, request.full_sync)
            except Exception as e:
                logger.error(f"Error syncing user {request.user_id}: {e}")
            finally:
                self.queue.task_done()

    async def run_due_sync_loop(self) -> None:
        logger.info(f"Due-sync loop started (interval: {self.sync_check_interval}s)")
        while True:
            try:
                await self.enqueue_due_syncs()
            except Exception as e:
                logger.error(f"Error in due-sync scan: {e}")

            await self._sleep(self.sync_check_interval)

    async def run_token_refresh_loop(self) -> None:
        logger.info(f"Token refresh loop started (daily at {self.token_refresh_hour_utc:02d}:00 UTC)")
        while True:
            now = self._clock()
            run_at = next_daily_run(now, self.token_refresh_hour_utc)
            logger.info(f"Next token refresh in {get_delay_description(run_at, now)}")
            await self._sleep((run_at - now).total_seconds())

            try:
                await self.token_manager.refresh_expiring()
            except Exception as e:
                logger.error(f"Error in token refresh run: {e}")

    async def run_dead_letter_loop(self) -> None:
        logger.info(f"Dead letter loop started (interval: {self.dead_letter_interval}s)")
        while True:
            try:
                await self.dead_letter.process_pending()
            except Exception as e:
                logger.error(f"Error in dead letter run: {e}")

            await self._sleep(self.dead_letter_interval)

    def start(self) -> list[asyncio.Task]:
        """Start all loops as tasks on the running event loop."""
        self._tasks = [
            asyncio.create_task(self.run_sync_consumer(), name="sync_consumer"),
            asyncio.create_task(self.run_due_sync_loop(), name="due_sync"),
            asyncio.create_task(self.run_token_refresh_loop(), name="token_refresh"),
            asyncio.create_task(self.run_dead_letter_loop(), name="dead_letter"),
        ]
        logger.info("Background worker started")
        return self._tasks

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Background worker stopped")
