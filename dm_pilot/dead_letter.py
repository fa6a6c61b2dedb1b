"""
Dead Letter Queue - out-of-band retry of DMs that failed to deliver.

The webhook processor writes a failed send to the `failed_sends` outbox
(never the access token). This module drains it:

    1. Look up the integration (and its current token) by id
    2. Contact flagged for a human: the item is closed as suppressed_hrn
       without sending
    3. Re-send with `send_with_retry` (default 2 attempts)
    4. Success: append a `dead_letter_retry` ActionLog row pointing at the
       original row via `retry_of`, mark the item retried_successfully
    5. Failure: bump the retry count; after `max_retries` the item is
       marked exhausted and an alert is raised
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt

from dm_pilot.alerts import AlertManager
from dm_pilot.instagram import InstagramAPI
from dm_pilot.models import DeliveryResult, ErrorKind, SendResult

logger = logging.getLogger(__name__)

DEAD_LETTER_RETRY_ACTION = "dead_letter_retry"
DEFAULT_SEND_ATTEMPTS = 2
BASE_DELAY_SECONDS = 1.0


def _should_retry(result: SendResult) -> bool:
    # A rejected token is never retried automatically
    return not result.ok and result.error_kind != ErrorKind.TOKEN_EXPIRED


async def send_with_retry(
    send: Callable[[], Awaitable[SendResult]],
    max_attempts: int = DEFAULT_SEND_ATTEMPTS,
    base_delay: float = BASE_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SendResult:
    """
    Call `send` until it succeeds or `max_attempts` is reached.

    Waits `retry_after` when the last result carries one, otherwise
    base_delay * 2^(attempt-1).

    Returns:
        The last SendResult.
    """
    def wait(retry_state) -> float:
        result = retry_state.outcome.result()
        if result.retry_after is not None:
            return result.retry_after
        return base_delay * (2 ** (retry_state.attempt_number - 1))

    def log_retry(retry_state) -> None:
        result = retry_state.outcome.result()
        logger.warning(
            f"Send attempt {retry_state.attempt_number}/{max_attempts} failed "
            f"(status={result.status}), retrying"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait,
        retry=retry_if_result(_should_retry),
        before_sleep=log_retry,
        sleep=sleep,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )

    async def attempt() -> SendResult:
        return await send()

    return await retrying(attempt)


class DeadLetterProcessor:
    """Retries pending items of the failed-send outbox."""

    def __init__(
        self,
        db,
        instagram: InstagramAPI,
        alerts: Optional[AlertManager] = None,
        max_retries: int = 5,
        send_attempts: int = DEFAULT_SEND_ATTEMPTS,
        base_delay: float = BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.instagram = instagram
        self.alerts = alerts or AlertManager()
        self.max_retries = max_retries
        self.send_attempts = send_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    async def process_pending(self, max_items: int = 10) -> dict[str, int]:
        """
        Retry up to `max_items` pending items.

        Returns:
            Counts by resulting status.
        """
        items = await self.db.get_dead_letter_items(
            max_items=max_items, max_retry_count=self.max_retries
        )
        counts = {"retried_successfully": 0, "pending": 0, "exhausted": 0, "suppressed_hrn": 0}
        for item in items:
            status = await self.retry_item(item)
            counts[status] = counts.get(status, 0) + 1

        if items:
            logger.info(f"Dead letter run: {counts}")
        return counts

    async def retry_item(self, item: dict) -> str:
        """Retry one outbox item and record the outcome. Returns the new status."""
        item_id = item["id"]
        integration = await self.db.get_integration(item["integration_id"])
        if integration is None:
            return await self._record_failure(item, "integration_not_found")
        if integration.needs_reconnect:
            return await self._record_failure(item, "integration_needs_reconnect")

        contact = await self.db.get_contact(item["user_id"], item["recipient_id"])
        if contact and contact.requires_human_response:
            logger.info(f"Dead letter item {item_id} dropped: contact needs a human")
            return await self.db.suppress_dead_letter_item(item_id, "human_response_required")

        async def send() -> SendResult:
            return await self.instagram.send_message(
                item["ig_user_id"],
                item["recipient_id"],
                integration.access_token,
                item["text"],
            )

        result = await send_with_retry(
            send,
            max_attempts=self.send_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
        )

        if not result.ok:
            error = f"status={result.status}"
            if result.error_kind:
                error += f" kind={result.error_kind.value}"
            return await self._record_failure(item, error)

        await self.db.add_action_log(
            user_id=item["user_id"],
            thread_id=item["thread_id"],
            recipient_id=item["recipient_id"],
            action=DEAD_LETTER_RETRY_ACTION,
            text=item["text"],
            result=DeliveryResult.SENT.value,
            message_id=result.message_id,
            retry_of=item.get("action_log_id"),
        )
        status = await self.db.retry_dead_letter_item(item_id, success=True)
        logger.info(f"Dead letter item {item_id} delivered on retry")
        return status

    async def _record_failure(self, item: dict, error: str) -> str:
        status = await self.db.retry_dead_letter_item(
            item["id"], success=False, error=error, max_retries=self.max_retries
        )
        if status == "exhausted":
            await self.alerts.error(
                "dead_letter_exhausted",
                "Reply could not be delivered after all retries",
                item_id=item["id"],
                user_id=item.get("user_id"),
                thread_id=item.get("thread_id"),
                error=error,
            )
        else:
            logger.warning(f"Dead letter item {item['id']} retry failed: {error}")
        return status
