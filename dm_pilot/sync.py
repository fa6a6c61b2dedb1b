"""
Contact Sync - pulls conversations from the platform into the contacts table.

Modes:
    full         every conversation is fetched, analyzed and overwritten
    incremental  only conversations updated since the last sync, or whose
                 participant has never been seen; known contacts keep their
                 stage/sentiment/score and only get last-message fields and
                 the follow-up flag refreshed

Rate limiting:
    Conversations are processed in batches (default 20), sequentially inside
    a batch with a short pause between items (200ms) and a longer pause
    between batches (1s).

Errors:
    A call failing with `token_expired` is retried once with the token
    re-read from the store. If it still fails the integration is marked
    `needs_reconnect` and the error propagates to the scheduler. Every
    other failure is contained: per conversation it drops that
    conversation, at the top level the run returns no contacts.
"""

import asyncio
import logging
import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

from dm_pilot.ai_client import AIClient, parse_json_response
from dm_pilot.alerts import AlertManager
from dm_pilot.graph_client import GraphAPIError
from dm_pilot.instagram import InstagramAPI
from dm_pilot.models import (
    AnalysisResult,
    Contact,
    ErrorKind,
    Integration,
    Stage,
    SyncedContact,
    parse_sentiment,
    parse_stage,
)
from dm_pilot.personalization import PromptPersonalizer
from dm_pilot.utils import parse_timestamp, sanitize_text, utcnow

logger = logging.getLogger(__name__)

MIN_MESSAGES_PER_CONTACT = 2
DEFAULT_MESSAGE_LIMIT = 10
BATCH_SIZE = 20
ITEM_DELAY_MS = 200
BATCH_DELAY_MS = 1000
MAX_MESSAGE_CHARS = 500
FOLLOWUP_AFTER = timedelta(hours=24)
ANALYSIS_TEMPERATURE = 0

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class _Target:
    """A conversation selected for this run, with its remote participant."""

    conversation: dict
    participant: dict


@dataclass
class _TokenState:
    integration: Integration
    access_token: str
    reloaded: bool = False


def find_participant(conversation: dict, own_username: str) -> Optional[dict]:
    """First participant that is not the connected account itself."""
    for participant in conversation.get("participants", {}).get("data", []):
        if isinstance(participant, dict) and participant.get("username") != own_username:
            return participant
    return None


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def parse_analysis(raw: Optional[str]) -> AnalysisResult:
    """Map a model answer to an AnalysisResult; anything unusable becomes the default."""
    parsed = parse_json_response(raw)
    if parsed is None:
        return AnalysisResult()

    score = parsed.get("leadScore")
    value = parsed.get("leadValue")
    next_action = parsed.get("nextAction")
    return AnalysisResult(
        stage=parse_stage(parsed.get("stage")),
        sentiment=parse_sentiment(parsed.get("sentiment")),
        lead_score=int(min(max(score, 0), 100)) if _finite(score) else 0,
        next_action=next_action if isinstance(next_action, str) else "",
        lead_value=float(max(value, 0)) if _finite(value) else 0,
    )


def needs_followup(last_message_at: Optional[datetime], stage: Stage, now: datetime) -> bool:
    if last_message_at is None:
        return False
    return last_message_at < now - FOLLOWUP_AFTER and stage != Stage.GHOSTED


def summarize_contacts(contacts: list[SyncedContact]) -> dict[str, Any]:
    """Stage/sentiment distributions and average lead score/value of a sync run."""
    count = len(contacts)
    return {
        "total": count,
        "stage_distribution": dict(Counter(c.analysis.stage.value for c in contacts)),
        "sentiment_distribution": dict(Counter(c.analysis.sentiment.value for c in contacts)),
        "average_lead_score": (
            sum(c.analysis.lead_score for c in contacts) / count if count else 0
        ),
        "average_lead_value": (
            sum(c.analysis.lead_value for c in contacts) / count if count else 0
        ),
    }


class ContactSyncPipeline:
    """Fetch, analyze and upsert contacts for one user."""

    def __init__(
        self,
        db,
        instagram: InstagramAPI,
        ai_client: AIClient,
        personalizer: Optional[PromptPersonalizer] = None,
        alerts: Optional[AlertManager] = None,
        batch_size: int = BATCH_SIZE,
        item_delay_ms: int = ITEM_DELAY_MS,
        batch_delay_ms: int = BATCH_DELAY_MS,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
        min_messages: int = MIN_MESSAGES_PER_CONTACT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.instagram = instagram
        self.ai_client = ai_client
        self.personalizer = personalizer or PromptPersonalizer(db)
        self.alerts = alerts or AlertManager()
        self.batch_size = batch_size
        self.item_delay = item_delay_ms / 1000
        self.batch_delay = batch_delay_ms / 1000
        self.message_limit = message_limit
        self.min_messages = min_messages
        self._sleep = sleep
        self._clock = clock

    async def sync(self, user_id: str, full_sync: bool = False) -> list[SyncedContact]:
        """
        Sync one user's conversations into contacts.

        Returns:
            The contacts written by this run (empty on a contained failure).

        Raises:
            GraphAPIError: With kind TOKEN_EXPIRED when the token is rejected
                even after re-reading it from the store.
        """
        integration: Optional[Integration] = None
        try:
            integration = await self.db.get_integration_for_user(user_id)
            if integration is None or not integration.access_token:
                logger.info(f"No integration for user {user_id}, nothing to sync")
                return []
            if integration.is_expired(self._clock()):
                logger.warning(f"Token for user {user_id} is expired, skipping sync")
                return []

            return await self._run(integration, full_sync)

        except GraphAPIError as e:
            if e.kind != ErrorKind.TOKEN_EXPIRED:
                logger.error(f"Sync failed for user {user_id}: {e.kind.value} ({e})")
                return []
            await self._handle_token_expired(integration)
            raise
        except Exception as e:
            logger.exception(f"Sync failed for user {user_id} (full_sync={full_sync}): {e}")
            return []

    async def _handle_token_expired(self, integration: Optional[Integration]) -> None:
        if integration is None:
            return
        await self.db.mark_needs_reconnect(integration.id)
        await self.alerts.error(
            "token_expired",
            "Access token rejected during sync; account needs to reconnect",
            user_id=integration.user_id,
            integration_id=integration.id,
        )

    async def _run(self, integration: Integration, full_sync: bool) -> list[SyncedContact]:
        user_id = integration.user_id
        state = _TokenState(integration=integration, access_token=integration.access_token)

        conversations = await self._with_token(
            state,
            lambda token: self.instagram.fetch_conversations(token, include_messages=True),
        )

        targets: list[_Target] = []
        for conversation in conversations:
            participant = find_participant(conversation, integration.username)
            if participant and participant.get("id"):
                targets.append(_Target(conversation, participant))

        existing = await self.db.get_contacts(user_id, [t.participant["id"] for t in targets])

        if not full_sync:
            targets = [
                t for t in targets
                if self._changed_since_last_sync(t, integration.last_synced_at, existing)
            ]

        logger.info(
            f"Syncing {len(targets)}/{len(conversations)} conversation(s) for user {user_id} "
            f"({'full' if full_sync else 'incremental'})"
        )

        enriched = await self._process_in_batches(
            targets, lambda target: self._fetch_messages(state, target)
        )

        now = self._clock()
        synced: list[SyncedContact] = []
        rows: list[Contact] = []
        for target, messages in enriched:
            participant = target.participant
            known = existing.get(participant["id"])

            if full_sync or known is None:
                analysis = await self._analyze(user_id, messages, participant.get("username"))
            else:
                analysis = AnalysisResult(
                    stage=known.stage,
                    sentiment=known.sentiment,
                    lead_score=known.lead_score,
                    next_action=known.next_action or "",
                    lead_value=known.lead_value,
                )

            latest = _first_message(target.conversation)
            timestamp = parse_timestamp(
                (latest or {}).get("created_time") or target.conversation.get("updated_time")
            )
            followup = needs_followup(timestamp, analysis.stage, now)
            last_text = (latest or {}).get("message") or ""

            synced.append(SyncedContact(
                id=participant["id"],
                name=participant.get("username") or "Unknown",
                last_message=last_text,
                timestamp=timestamp,
                messages=[
                    f"{(m.get('from') or {}).get('username')}: {m.get('message') or ''}"
                    for m in messages
                ],
                analysis=analysis,
                followup_needed=followup,
            ))
            rows.append(Contact(
                user_id=user_id,
                id=participant["id"],
                username=participant.get("username"),
                last_message=last_text or None,
                last_message_at=timestamp,
                stage=analysis.stage,
                sentiment=analysis.sentiment,
                lead_score=analysis.lead_score,
                lead_value=analysis.lead_value,
                next_action=analysis.next_action,
                followup_needed=followup,
            ))

        await self.db.upsert_synced_contacts(user_id, rows, full_sync)
        await self.db.mark_integration_synced(user_id, now)
        logger.info(f"Sync complete for user {user_id}: {len(synced)} contact(s)")
        return synced

    @staticmethod
    def _changed_since_last_sync(
        target: _Target,
        last_synced_at: Optional[datetime],
        existing: dict[str, Contact],
    ) -> bool:
        if last_synced_at is None:
            return True
        if target.participant["id"] not in existing:
            return True
        updated = parse_timestamp(target.conversation.get("updated_time"))
        return updated is not None and updated > last_synced_at

    async def _with_token(self, state: _TokenState, call: Callable[[str], Awaitable[R]]) -> R:
        """Run `call(token)`, re-reading the token once if it is rejected."""
        try:
            return await call(state.access_token)
        except GraphAPIError as e:
            if e.kind != ErrorKind.TOKEN_EXPIRED or state.reloaded:
                raise
            state.reloaded = True
            fresh = await self.db.get_integration(state.integration.id)
            if fresh is None or not fresh.access_token:
                raise
            logger.info(f"Token rejected for integration {state.integration.id}, retrying with stored token")
            state.access_token = fresh.access_token
        return await call(state.access_token)

    async def _fetch_messages(
        self,
        state: _TokenState,
        target: _Target,
    ) -> Optional[tuple[_Target, list[dict]]]:
        conversation_id = target.conversation.get("id")
        if not conversation_id:
            return None
        try:
            messages = await self._with_token(
                state,
                lambda token: self.instagram.fetch_conversation_messages(
                    token, conversation_id, limit=self.message_limit
                ),
            )
        except GraphAPIError as e:
            if e.kind == ErrorKind.TOKEN_EXPIRED:
                raise
            logger.warning(f"Skipping conversation {conversation_id}: {e.kind.value}")
            return None

        if len(messages) < self.min_messages:
            return None
        return target, messages

    async def _process_in_batches(
        self,
        items: list[T],
        processor: Callable[[T], Awaitable[Optional[R]]],
    ) -> list[R]:
        results: list[R] = []
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            for index, item in enumerate(batch):
                result = await processor(item)
                if result is not None:
                    results.append(result)
                if index < len(batch) - 1:
                    await self._sleep(self.item_delay)
            if start + self.batch_size < len(items):
                await self._sleep(self.batch_delay)
        return results

    async def _analyze(
        self,
        user_id: str,
        messages: list[dict],
        participant_username: Optional[str],
    ) -> AnalysisResult:
        transcript = "\n".join(
            f"{'Customer' if (m.get('from') or {}).get('username') == participant_username else 'Business'}: "
            f"{sanitize_text(m.get('message'))[:MAX_MESSAGE_CHARS]}"
            for m in messages
        )
        try:
            prompt = await self.personalizer.lead_analysis(user_id, transcript)
            raw = await self.ai_client.complete(
                system=prompt.system,
                prompt=prompt.main,
                temperature=ANALYSIS_TEMPERATURE,
            )
        except Exception as e:
            logger.error(f"Conversation analysis failed: {e}")
            return AnalysisResult()
        return parse_analysis(raw)


def _first_message(conversation: dict) -> Optional[dict]:
    data = (conversation.get("messages") or {}).get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return None
