"""
Reply Generator - general-purpose DM replies and follow-up drafts.

Used by the webhook processor when no automation supplied the reply text.
Context comes from the live conversation history (last 10 messages, oldest
first); when the platform cannot be reached it falls back to the contact's
last stored message plus the inbound text.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from dm_pilot.ai_client import AIClient
from dm_pilot.graph_client import GraphAPIError
from dm_pilot.instagram import InstagramAPI
from dm_pilot.personalization import PromptPersonalizer
from dm_pilot.utils import sanitize_text

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
MAX_MESSAGE_CHARS = 500
MAX_CONTEXT_CHARS = 2000
MAX_REPLY_CHARS = 500
MAX_FOLLOW_UP_CHARS = 280
REPLY_TEMPERATURE = 0.4


@dataclass
class FollowUpResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None


def format_transcript(lines: list[tuple[str, str]]) -> str:
    """Render (speaker, text) pairs as `Speaker: text`, each capped at 500 chars."""
    return "\n".join(
        f"{who}: {sanitize_text(text)[:MAX_MESSAGE_CHARS]}" for who, text in lines
    )


def find_conversation_with(conversations: list[dict], participant_id: str) -> Optional[dict]:
    for conversation in conversations:
        participants = conversation.get("participants", {}).get("data", [])
        if any(isinstance(p, dict) and p.get("id") == participant_id for p in participants):
            return conversation
    return None


class ReplyGenerator:
    """Builds personalized, first-person replies through the generation service."""

    def __init__(
        self,
        db,
        ai_client: AIClient,
        instagram: InstagramAPI,
        personalizer: Optional[PromptPersonalizer] = None,
    ) -> None:
        self.db = db
        self.ai_client = ai_client
        self.instagram = instagram
        self.personalizer = personalizer or PromptPersonalizer(db)

    async def _fetch_history(self, access_token: str, participant_id: str) -> list[dict]:
        """Recent messages with `participant_id`, oldest first. Raises GraphAPIError."""
        conversations = await self.instagram.fetch_conversations(access_token)
        conversation = find_conversation_with(conversations, participant_id)
        if not conversation or not conversation.get("id"):
            return []
        messages = await self.instagram.fetch_conversation_messages(
            access_token, conversation["id"], limit=HISTORY_LIMIT
        )
        return list(reversed(messages))

    async def _build_context(
        self,
        user_id: str,
        sender_id: str,
        text: str,
        access_token: Optional[str],
    ) -> str:
        lines: list[tuple[str, str]] = []

        if access_token:
            try:
                for message in await self._fetch_history(access_token, sender_id):
                    body = message.get("message")
                    if not body:
                        continue
                    sender = (message.get("from") or {}).get("id")
                    lines.append(("Customer" if sender == sender_id else "Business", body))
            except GraphAPIError as e:
                logger.warning(f"History fetch failed ({e.kind.value}), using stored context")
                lines = []

        if not lines:
            contact = await self.db.get_contact(user_id, sender_id)
            if contact and contact.last_message:
                lines.append(("Customer", contact.last_message))
            lines.append(("Customer", text))

        return format_transcript(lines)[:MAX_CONTEXT_CHARS]

    async def _system_prompt(self, user_id: str, personalized_system: str) -> str:
        override = await self.personalizer.get_system_prompt_override(user_id)
        return override or personalized_system

    async def generate_reply(
        self,
        user_id: str,
        sender_id: str,
        text: str,
        access_token: Optional[str] = None,
    ) -> Optional[str]:
        """
        Generate a short on-tone reply to an inbound DM.

        Returns:
            Reply text (sanitized, at most 500 chars) or None when nothing
            was generated.
        """
        context = await self._build_context(user_id, sender_id, text, access_token)
        prompt = await self.personalizer.auto_reply(user_id, context)
        system = await self._system_prompt(user_id, prompt.system)

        raw = await self.ai_client.complete(
            system=system,
            prompt=prompt.main,
            temperature=REPLY_TEMPERATURE,
        )
        reply = sanitize_text(raw)[:MAX_REPLY_CHARS]
        if not reply:
            logger.info(f"No reply generated for {sender_id}")
            return None
        return reply

    async def generate_follow_up(self, user_id: str, contact_id: str) -> FollowUpResult:
        """Draft a follow-up (at most 280 chars) for a contact who went quiet."""
        contact = await self.db.get_contact(user_id, contact_id)
        if contact is None:
            return FollowUpResult(success=False, error="Contact not found")

        integration = await self.db.get_integration_for_user(user_id)
        if integration is None or not integration.access_token:
            return FollowUpResult(success=False, error="No Instagram integration found")

        try:
            history = await self._fetch_history(integration.access_token, contact_id)
        except GraphAPIError as e:
            logger.warning(f"Follow-up history fetch failed: {e.kind.value}")
            history = []

        transcript = format_transcript([
            (
                "Business"
                if (message.get("from") or {}).get("username") == integration.username
                else "Customer",
                message.get("message") or "",
            )
            for message in history
            if message.get("message")
        ])

        prompt = await self.personalizer.follow_up(
            user_id,
            customer_name=contact.username or "Unknown",
            stage=contact.stage.value,
            lead_score=contact.lead_score,
            last_message=contact.last_message or "No previous message",
            conversation_history=transcript,
        )
        system = await self._system_prompt(user_id, prompt.system)

        raw = await self.ai_client.complete(
            system=system,
            prompt=prompt.main,
            temperature=REPLY_TEMPERATURE,
        )
        text = sanitize_text(raw)[:MAX_FOLLOW_UP_CHARS]
        if not text:
            return FollowUpResult(success=False, error="Failed to generate follow-up message")
        return FollowUpResult(success=True, message=text)
