"""
Trigger Matching - first-match-wins keyword rules.

An automation fires when its trigger word is a case-insensitive substring
of the inbound text and its scope is compatible with the surface the text
arrived on:

    automation scope   DM     comment
    dm / unset         yes    no
    comment            no     yes
    both               yes    yes

Automations are tried in creation order and the first hit wins. There is
no scoring: adding a broader rule earlier changes which rule fires.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from dm_pilot.models import Automation, AutomationAction, Scope

logger = logging.getLogger(__name__)


def scope_matches(automation_scope: Optional[Scope], surface: Scope) -> bool:
    """Check whether a rule with `automation_scope` applies to `surface`."""
    if automation_scope is None:
        return surface == Scope.DM
    if automation_scope == Scope.BOTH:
        return True
    if automation_scope == Scope.DM:
        return surface == Scope.DM
    if automation_scope == Scope.COMMENT:
        return surface == Scope.COMMENT
    raise ValueError(f"Unhandled scope: {automation_scope}")


def match_automation(
    automations: Iterable[Automation],
    text: str,
    surface: Scope,
    now: datetime,
) -> Optional[Automation]:
    """
    Return the first live automation whose trigger occurs in `text`.

    Args:
        automations: Candidate rules in evaluation (creation) order.
        text: Inbound message or comment text.
        surface: Where the text arrived (DM or comment).
        now: Reference time for the expiry check.
    """
    lower = (text or "").lower()
    if not lower:
        return None

    for automation in automations:
        if not automation.is_live(now):
            continue
        trigger = (automation.trigger_word or "").lower()
        if not trigger:
            continue
        if scope_matches(automation.trigger_scope, surface) and trigger in lower:
            return automation

    return None


def automation_action(surface: Scope, automation: Automation) -> AutomationAction:
    """Action tag for the usage log of an automation that fired on `surface`."""
    if surface == Scope.COMMENT:
        return AutomationAction.COMMENT_AUTOMATION_TRIGGERED

    scope = automation.effective_scope
    if scope == Scope.BOTH:
        return AutomationAction.DM_AND_COMMENT_AUTOMATION_TRIGGERED
    if scope == Scope.COMMENT:
        return AutomationAction.COMMENT_AUTOMATION_TRIGGERED
    if scope == Scope.DM:
        return AutomationAction.DM_AUTOMATION_TRIGGERED
    raise ValueError(f"Unhandled scope: {scope}")


class TriggerMatcher:
    """Store-backed matcher used by the webhook processor."""

    def __init__(self, db) -> None:
        self.db = db

    async def find_match(
        self,
        user_id: str,
        text: str,
        surface: Scope,
        now: datetime,
    ) -> Optional[Automation]:
        automations = await self.db.get_active_automations(user_id, now)
        matched = match_automation(automations, text, surface, now)
        if matched:
            logger.info(
                f"Automation {matched.id} matched trigger '{matched.trigger_word}' "
                f"on {surface.value}"
            )
        return matched

    async def log_usage(
        self,
        automation: Automation,
        surface: Scope,
        user_id: str,
        thread_id: str,
        recipient_id: str,
        text: Optional[str],
        message_id: Optional[str],
    ) -> str:
        """Append an automation usage record."""
        return await self.db.add_automation_action_log(
            user_id=user_id,
            thread_id=thread_id,
            recipient_id=recipient_id,
            automation_id=automation.id,
            trigger_word=automation.trigger_word,
            action=automation_action(surface, automation).value,
            text=text,
            message_id=message_id,
        )
