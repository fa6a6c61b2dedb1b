"""
Webhook Processor - per-event state machine for inbound platform webhooks.

A payload is either a batch of comment changes or a single direct message
(decided by shape: `entry[0].changes` first, then `entry[0].messaging[0]`).

Direct-message steps, each a possible early exit:

    1. Sticky HRN      contact already flagged -> record message, send nothing
    2. HRN classify    classifier says HRN     -> flag contact, send nothing
    3. Dedup           provider mid already claimed, or (no mid) recent
                       action on the thread    -> send nothing
    4. Trigger match   matched rule enforces HRN -> flag contact, send nothing
    5. Reply text      automation text, else general reply generator
    6. Delivery        send, record contact + ActionLog (sent|failed)
    7. Dead letter     failed sends go to the outbox
    8. Usage log       matched automation -> AutomationActionLog

The processor never raises: `process()` always returns an "ok" result so the
HTTP layer can acknowledge and the platform does not redeliver.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from config.prompts import COMMENT_AI_FALLBACK_REPLY
from dm_pilot.ai_client import AIClient
from dm_pilot.alerts import AlertManager
from dm_pilot.hrn import HRNClassifier
from dm_pilot.instagram import InstagramAPI
from dm_pilot.matching import TriggerMatcher
from dm_pilot.models import (
    Automation,
    DeliveryResult,
    Integration,
    ProcessResult,
    ResponseType,
    Scope,
    SendResult,
    WebhookOutcome,
)
from dm_pilot.reply import ReplyGenerator
from dm_pilot.templates import parse_template_elements
from dm_pilot.utils import comment_thread_id, dm_thread_id, utcnow

logger = logging.getLogger(__name__)

SENT_REPLY_ACTION = "sent_reply"


def _first(items: Any) -> Optional[dict]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


class WebhookProcessor:
    """Runs one webhook payload through the comment or DM pipeline."""

    def __init__(
        self,
        db,
        instagram: InstagramAPI,
        classifier: HRNClassifier,
        matcher: TriggerMatcher,
        reply_generator: ReplyGenerator,
        ai_client: AIClient,
        alerts: Optional[AlertManager] = None,
        dedup_window_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.instagram = instagram
        self.classifier = classifier
        self.matcher = matcher
        self.reply_generator = reply_generator
        self.ai_client = ai_client
        self.alerts = alerts or AlertManager()
        self.dedup_window = timedelta(seconds=dedup_window_seconds)
        self._clock = clock

    async def process(self, payload: Any) -> ProcessResult:
        """
        Process one webhook payload.

        Returns:
            ProcessResult with status "ok" in every case, including errors.
        """
        try:
            return await self._dispatch(payload)
        except Exception as e:
            logger.exception(f"Webhook processing failed: {e}")
            return ProcessResult(WebhookOutcome.ERROR, detail=str(e))

    async def _dispatch(self, payload: Any) -> ProcessResult:
        entry = _first(payload.get("entry")) if isinstance(payload, dict) else None
        if entry is None:
            return ProcessResult(WebhookOutcome.IGNORED, detail="no entry")

        entry_id = _str_or_none(entry.get("id"))
        changes = entry.get("changes")
        if isinstance(changes, list) and changes:
            await self.process_comment_changes(entry_id, changes)
            return ProcessResult(WebhookOutcome.COMMENTS_PROCESSED)

        event = _first(entry.get("messaging"))
        if event is None:
            return ProcessResult(WebhookOutcome.IGNORED, detail="no messaging event")

        sender_id = _str_or_none((event.get("sender") or {}).get("id"))
        message = event.get("message") or {}
        text = message.get("text") if isinstance(message.get("text"), str) else ""

        if message.get("is_echo"):
            return ProcessResult(WebhookOutcome.IGNORED, detail="echo")
        if not entry_id or not sender_id or not text or sender_id == entry_id:
            return ProcessResult(WebhookOutcome.IGNORED, detail="incomplete event")

        return await self.process_direct_message(
            ig_user_id=entry_id,
            sender_id=sender_id,
            text=text,
            webhook_mid=_str_or_none(message.get("mid")),
        )

    # =========================================================================
    # Comments
    # =========================================================================

    async def process_comment_changes(self, ig_user_id: Optional[str], changes: list) -> int:
        """
        Handle each comment change of an entry.

        Returns:
            Number of comments answered.
        """
        if not ig_user_id:
            return 0

        integration = await self.db.get_integration_by_account(ig_user_id)
        if integration is None:
            logger.debug(f"No integration for account {ig_user_id}, skipping comments")
            return 0

        answered = 0
        for change in changes:
            if not isinstance(change, dict) or change.get("field") != "comments":
                continue
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            try:
                if await self._process_comment(integration, ig_user_id, value):
                    answered += 1
            except Exception as e:
                logger.exception(f"Comment {value.get('id')} failed: {e}")
        return answered

    async def _process_comment(
        self,
        integration: Integration,
        ig_user_id: str,
        value: dict,
    ) -> bool:
        comment_id = _str_or_none(value.get("id"))
        commenter_id = _str_or_none((value.get("from") or {}).get("id"))
        text = value.get("text") if isinstance(value.get("text"), str) else ""
        if not commenter_id or not text:
            return False

        now = self._clock()
        automation = await self.matcher.find_match(integration.user_id, text, Scope.COMMENT, now)
        if automation is None or not comment_id:
            return False

        # Comments never touch contact state; a rule-level HRN hit only suppresses the reply
        decision = self.classifier.classify_rules(text)
        if decision is not None and decision.hrn:
            logger.info(f"Comment {comment_id} needs a human ({decision.reason}), not replying")
            return False

        reply_text = ""
        if automation.response_type == ResponseType.FIXED:
            reply_text = automation.response_content
        elif automation.response_type == ResponseType.AI_PROMPT:
            generated = await self.ai_client.generate_automation_response(
                automation.response_content, text
            )
            reply_text = generated or COMMENT_AI_FALLBACK_REPLY

        token = integration.access_token
        result: Optional[SendResult] = None
        if automation.response_type == ResponseType.GENERIC_TEMPLATE:
            elements = parse_template_elements(automation.response_content)
            if elements:
                result = await self.instagram.send_comment_generic_template(
                    ig_user_id, comment_id, token, elements
                )

        if result is None and reply_text:
            result = await self.instagram.send_comment_reply(ig_user_id, comment_id, token, reply_text)

        await self.matcher.log_usage(
            automation,
            Scope.COMMENT,
            user_id=integration.user_id,
            thread_id=comment_thread_id(ig_user_id, comment_id),
            recipient_id=commenter_id,
            text=reply_text,
            message_id=result.message_id if result else None,
        )

        public_reply = (automation.comment_reply_text or "").strip()
        if public_reply:
            public = await self.instagram.post_public_comment_reply(comment_id, token, public_reply)
            if not public.ok:
                logger.warning(f"Public reply to comment {comment_id} failed (status={public.status})")

        return result is not None and result.ok

    # =========================================================================
    # Direct messages
    # =========================================================================

    async def process_direct_message(
        self,
        ig_user_id: str,
        sender_id: str,
        text: str,
        webhook_mid: Optional[str] = None,
    ) -> ProcessResult:
        integration = await self.db.get_integration_by_account(ig_user_id)
        if integration is None:
            return ProcessResult(WebhookOutcome.IGNORED, detail="no integration")

        user_id = integration.user_id
        now = self._clock()

        # 1. Sticky escalation
        contact = await self.db.get_contact(user_id, sender_id)
        if contact and contact.requires_human_response:
            await self.db.touch_contact(user_id, sender_id, text, now)
            return ProcessResult(WebhookOutcome.HRN_STICKY)

        # 2. HRN classification
        decision = await self.classifier.classify(
            text, contact.last_message if contact else None
        )
        if decision.hrn:
            await self._escalate(user_id, sender_id, text, now, decision.reason)
            return ProcessResult(WebhookOutcome.HRN_FLAGGED, detail=decision.reason)

        # 3. Dedup
        account_id = integration.instagram_user_id or ig_user_id
        thread_id = dm_thread_id(account_id, sender_id)
        if await self._is_duplicate(user_id, thread_id, webhook_mid, now):
            logger.info(f"Duplicate delivery for thread {thread_id} (mid={webhook_mid}), skipping")
            return ProcessResult(WebhookOutcome.DUPLICATE)

        # 4. Trigger match
        automation = await self.matcher.find_match(user_id, text, Scope.DM, now)
        if automation and automation.hrn_enforced:
            await self._escalate(
                user_id, sender_id, text, now, f"automation {automation.id} enforces HRN"
            )
            return ProcessResult(WebhookOutcome.HRN_ENFORCED, detail=automation.id)

        # 5. Reply text
        reply_text = await self._automation_text(automation, text)
        if not reply_text:
            reply_text = await self.reply_generator.generate_reply(
                user_id, sender_id, text, integration.access_token
            )
        if not reply_text:
            return ProcessResult(WebhookOutcome.NO_REPLY)

        # 6. Delivery
        result = await self.instagram.send_message(
            account_id, sender_id, integration.access_token, reply_text
        )
        delivered = result.ok
        await self.db.touch_contact(user_id, sender_id, text, now)
        action_log_id = await self.db.add_action_log(
            user_id=user_id,
            thread_id=thread_id,
            recipient_id=sender_id,
            action=SENT_REPLY_ACTION,
            text=reply_text,
            result=(DeliveryResult.SENT if delivered else DeliveryResult.FAILED).value,
            message_id=result.message_id,
            webhook_mid=webhook_mid,
        )

        # 7. Dead letter
        if not delivered:
            await self._enqueue_dead_letter(
                integration, account_id, sender_id, thread_id, reply_text, action_log_id, result
            )

        # 8. Automation usage
        if automation:
            await self.matcher.log_usage(
                automation,
                Scope.DM,
                user_id=user_id,
                thread_id=thread_id,
                recipient_id=sender_id,
                text=reply_text,
                message_id=result.message_id,
            )

        outcome = WebhookOutcome.SENT if delivered else WebhookOutcome.FAILED
        return ProcessResult(outcome, detail=result.message_id)

    async def _is_duplicate(
        self,
        user_id: str,
        thread_id: str,
        webhook_mid: Optional[str],
        now: datetime,
    ) -> bool:
        if webhook_mid:
            claimed = await self.db.claim_webhook_message(user_id, webhook_mid)
            return not claimed
        return await self.db.has_recent_action(user_id, thread_id, now - self.dedup_window)

    async def _escalate(
        self,
        user_id: str,
        sender_id: str,
        text: str,
        now: datetime,
        reason: str,
    ) -> None:
        await self.db.flag_human_response(user_id, sender_id, text, now)
        await self.alerts.info(
            "hrn_escalation",
            "Conversation handed to a human",
            user_id=user_id,
            contact_id=sender_id,
            reason=reason,
        )

    async def _automation_text(self, automation: Optional[Automation], text: str) -> str:
        if automation is None:
            return ""
        if automation.response_type == ResponseType.FIXED:
            return automation.response_content
        if automation.response_type == ResponseType.AI_PROMPT:
            generated = await self.ai_client.generate_automation_response(
                automation.response_content, text
            )
            return generated or ""
        return ""

    async def _enqueue_dead_letter(
        self,
        integration: Integration,
        account_id: str,
        recipient_id: str,
        thread_id: str,
        text: str,
        action_log_id: str,
        result: SendResult,
    ) -> None:
        error = f"send failed: status={result.status}"
        if result.error_kind:
            error += f" kind={result.error_kind.value}"
        try:
            await self.db.add_to_dead_letter_queue(
                user_id=integration.user_id,
                integration_id=integration.id,
                ig_user_id=account_id,
                recipient_id=recipient_id,
                thread_id=thread_id,
                text=text,
                action_log_id=action_log_id,
                error=error,
            )
        except Exception as e:
            await self.alerts.critical(
                "dead_letter_enqueue_failed",
                "Failed send could not be queued for retry",
                user_id=integration.user_id,
                thread_id=thread_id,
                action_log_id=action_log_id,
                error=str(e),
            )
