"""
Personalized prompt rendering.

Business profile, tone, offers and FAQs written by the dashboard are
substituted into the LEAD_ANALYSIS, FOLLOW_UP and AUTO_REPLY prompt pairs.
Placeholders are `{name}` tokens replaced literally, so prompts may contain
JSON braces without escaping.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from config.prompts import (
    AUTO_REPLY_MAIN,
    AUTO_REPLY_SYSTEM,
    FOLLOW_UP_MAIN,
    FOLLOW_UP_SYSTEM,
    LEAD_ANALYSIS_MAIN,
    LEAD_ANALYSIS_SYSTEM,
)

logger = logging.getLogger(__name__)


@dataclass
class PromptPair:
    system: str
    main: str


def format_prompt(template: str, variables: dict[str, Any]) -> str:
    """Replace every `{key}` in `template` with `str(value)`."""
    for key, value in variables.items():
        template = template.replace("{" + key + "}", str(value))
    return template


def _joined(value: Any, default: str) -> str:
    if isinstance(value, list):
        items = [str(item) for item in value if item]
        return ", ".join(items) if items else default
    return str(value) if value else default


def _format_faqs(faqs: list[dict]) -> str:
    rendered = [
        f"Q: {faq.get('question')}\nA: {faq.get('answer') or ''}".rstrip()
        for faq in faqs
        if faq.get("question")
    ]
    return "\n\n".join(rendered) if rendered else "none"


def build_variables(
    profile: Optional[dict],
    tone: Optional[dict],
    offers: list[dict],
    faqs: list[dict],
) -> dict[str, str]:
    """Personalization variables with neutral defaults for anything missing."""
    profile = profile or {}
    offer_lines = [
        f"{offer.get('name')}: {offer.get('content') or ''}"
        for offer in offers
        if offer.get("name")
    ]
    return {
        "businessName": profile.get("name") or "the business",
        "businessType": profile.get("business_type") or "business",
        "mainOffering": profile.get("main_offering") or "provides services",
        "useCases": _joined(profile.get("use_cases"), "various use cases"),
        "pilotGoals": _joined(profile.get("pilot_goals"), "business goals"),
        "leadsPerMonth": profile.get("leads_per_month") or "multiple",
        "toneStyle": (tone or {}).get("tone_type") or "professional",
        "currentOffers": "; ".join(offer_lines) if offer_lines else "various offers",
        "faqs": _format_faqs(faqs),
    }


class PromptPersonalizer:
    """Loads a user's personalization rows and renders prompt pairs."""

    def __init__(self, db) -> None:
        self.db = db

    async def load_variables(self, user_id: str) -> dict[str, str]:
        profile = await self.db.get_business_profile(user_id)
        tone = await self.db.get_tone_profile(user_id)
        offers = await self.db.get_offers(user_id)
        faqs = await self.db.get_faqs(user_id)
        return build_variables(profile, tone, offers, faqs)

    async def get_system_prompt_override(self, user_id: str) -> Optional[str]:
        """The user's own sidekick system prompt, if one is configured."""
        settings = await self.db.get_sidekick_settings(user_id)
        prompt = (settings or {}).get("system_prompt")
        return prompt.strip() if isinstance(prompt, str) and prompt.strip() else None

    async def _render(
        self,
        user_id: str,
        system: str,
        main: str,
        extra: dict[str, Any],
    ) -> PromptPair:
        variables = await self.load_variables(user_id)
        # Conversation text goes in last and is never re-scanned for placeholders
        system = format_prompt(format_prompt(system, variables), extra)
        main = format_prompt(format_prompt(main, variables), extra)
        return PromptPair(system=system, main=main)

    async def lead_analysis(self, user_id: str, conversation_history: str) -> PromptPair:
        return await self._render(
            user_id,
            LEAD_ANALYSIS_SYSTEM,
            LEAD_ANALYSIS_MAIN,
            {"conversationHistory": conversation_history},
        )

    async def auto_reply(self, user_id: str, conversation_context: str) -> PromptPair:
        return await self._render(
            user_id,
            AUTO_REPLY_SYSTEM,
            AUTO_REPLY_MAIN,
            {"conversationContext": conversation_context},
        )

    async def follow_up(
        self,
        user_id: str,
        customer_name: str,
        stage: str,
        lead_score: int,
        last_message: str,
        conversation_history: str,
    ) -> PromptPair:
        return await self._render(
            user_id,
            FOLLOW_UP_SYSTEM,
            FOLLOW_UP_MAIN,
            {
                "customerName": customer_name,
                "stage": stage,
                "leadScore": lead_score,
                "lastMessage": last_message,
                "conversationHistory": conversation_history,
            },
        )
