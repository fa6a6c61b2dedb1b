"""
HRN Classifier - decides whether an inbound message needs a human.

HRN (Human Response Needed) is the safety gate in front of every automated
DM reply. Three cheap rules run before any model call:

    1. Risk terms          refund, cancel, legal, pricing, ...   -> HRN (0.95)
    2. Document + review   "pdf" + "sign", "contract" + "review" -> HRN (0.90)
    3. Trivial ack         "ok", "thanks", "sounds good"          -> AUTO_OK (0.15)

Anything else goes to the generation service with a few-shot prompt that
asks for strict JSON. Every failure path on the model side resolves to
HRN: an unparseable answer or an unavailable service never lets a message
through to auto-reply.

Input is sanitized (control characters and angle brackets removed) and
truncated to 1200 characters before any rule or prompt sees it.
"""

import logging
import math
import re
from typing import TYPE_CHECKING, Optional

from config.prompts import HRN_FEW_SHOT, HRN_PROMPT_TEMPLATE, HRN_SYSTEM_PROMPT
from dm_pilot.ai_client import parse_json_response
from dm_pilot.models import HRNDecision
from dm_pilot.utils import sanitize_text

if TYPE_CHECKING:
    from dm_pilot.ai_client import AIClient

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 1200
TRIVIAL_MAX_LENGTH = 20
MAX_SIGNALS = 10
LLM_TEMPERATURE = 0.4

RISK_TERMS = (
    "refund", "cancel", "chargeback", "legal", "lawyer", "terms",
    "pricing", "discount", "custom", "scope", "deadline",
)

DOC_TERMS = (
    "pdf", "doc", "contract", "proposal", "deck", "slides",
    "notion", "loom", "drive", "invoice", "quote", "estimate",
)

REVIEW_VERBS = (
    "review", "check", "sign", "approve", "confirm",
    "verify", "look over", "feedback", "thoughts",
)

TRIVIAL_ACKS = frozenset({
    "ok", "okay", "k", "kk", "sure", "thanks", "thank you", "ty", "thx",
    "yep", "yup", "yes", "yeah", "ya", "got it", "cool", "sounds good",
    "great", "perfect", "nice", "awesome",
    "👍", "🙏", "🙌", "❤️", "🔥",
})

_ACK_SEPARATORS = re.compile(r"[.,!?\s]+")


def _contains_any(text: str, terms) -> list[str]:
    lower = text.lower()
    return [term for term in terms if term in lower]


def check_risk_terms(text: str) -> Optional[HRNDecision]:
    matched = _contains_any(text, RISK_TERMS)
    if not matched:
        return None
    return HRNDecision(
        hrn=True,
        confidence=0.95,
        signals=matched,
        reason=f"Risk terms detected: {', '.join(matched)}",
    )


def check_doc_review(text: str) -> Optional[HRNDecision]:
    doc_hits = _contains_any(text, DOC_TERMS)
    review_hits = _contains_any(text, REVIEW_VERBS)
    if not doc_hits or not review_hits:
        return None
    return HRNDecision(
        hrn=True,
        confidence=0.9,
        signals=doc_hits + review_hits,
        reason=(
            f"Document review requested: {', '.join(doc_hits)} + {', '.join(review_hits)}"
        ),
    )


def check_trivial_ack(text: str) -> Optional[HRNDecision]:
    trimmed = text.strip()
    if len(trimmed) > TRIVIAL_MAX_LENGTH:
        return None
    if _contains_any(trimmed, RISK_TERMS):
        return None

    normalized = _ACK_SEPARATORS.sub(" ", trimmed.lower()).strip()
    if normalized not in TRIVIAL_ACKS:
        return None

    return HRNDecision(
        hrn=False,
        confidence=0.15,
        signals=["trivial_ack"],
        reason="Benign acknowledgment; safe for auto-reply.",
    )


def _prepare(text: Optional[str]) -> str:
    return sanitize_text(text or "")[:MAX_INPUT_LENGTH].strip()


def parse_classifier_output(raw: Optional[str]) -> HRNDecision:
    """
    Turn a model answer into a decision, defaulting to HRN on anything odd.

    Confidence is clamped to 0..1 (missing: 0.6 for HRN, 0.3 otherwise) and
    at most ten signals are kept.
    """
    parsed = parse_json_response(raw)
    if parsed is None:
        return HRNDecision(
            hrn=True,
            confidence=0.2,
            signals=["parse_fallback"],
            reason="Failed to parse HRN classification; defaulting to HRN for safety.",
        )

    hrn = bool(parsed.get("hrn"))

    confidence = parsed.get("confidence")
    if (
        isinstance(confidence, (int, float))
        and not isinstance(confidence, bool)
        and math.isfinite(confidence)
    ):
        confidence = min(max(float(confidence), 0.0), 1.0)
    else:
        confidence = 0.6 if hrn else 0.3

    signals = parsed.get("signals")
    if isinstance(signals, list):
        signals = [str(signal) for signal in signals][:MAX_SIGNALS]
    else:
        signals = []

    reason = parsed.get("reason")
    if isinstance(reason, str) and reason.strip():
        reason = reason.strip()
    else:
        reason = "Classifier favored HRN." if hrn else "Classifier favored AUTO_OK."

    return HRNDecision(hrn=hrn, confidence=confidence, signals=signals, reason=reason)


class HRNClassifier:
    """Rule cascade with a model fallback."""

    def __init__(self, ai_client: Optional["AIClient"] = None) -> None:
        self.ai_client = ai_client

    async def classify(
        self,
        message: Optional[str],
        context_snippet: Optional[str] = None,
    ) -> HRNDecision:
        """
        Decide whether `message` must be handled by a human.

        Args:
            message: Inbound message text.
            context_snippet: Optional surrounding conversation for the model.

        Returns:
            HRNDecision; `hrn=True` means no automated reply may be sent.
        """
        text = _prepare(message)
        if not text:
            return HRNDecision(hrn=False, confidence=0.1, signals=[], reason="empty")

        decision = self.classify_rules(text)
        if decision is not None:
            return decision

        return await self.classify_with_llm(text, context_snippet)

    def classify_rules(self, message: Optional[str]) -> Optional[HRNDecision]:
        """Run only the rule cascade. Returns None when no rule fires."""
        text = _prepare(message)
        if not text:
            return None

        for rule in (check_risk_terms, check_doc_review, check_trivial_ack):
            decision = rule(text)
            if decision is not None:
                logger.debug(f"HRN rule {rule.__name__} fired: hrn={decision.hrn}")
                return decision
        return None

    async def classify_with_llm(
        self,
        message: Optional[str],
        context_snippet: Optional[str] = None,
    ) -> HRNDecision:
        text = _prepare(message)
        if not text:
            return HRNDecision(hrn=False, confidence=0.1, signals=[], reason="empty")

        if self.ai_client is None:
            return self._unavailable()

        context = _prepare(context_snippet)
        prompt = HRN_PROMPT_TEMPLATE.format(
            context=context or "none",
            message=text,
            few_shot=HRN_FEW_SHOT,
        )

        raw = await self.ai_client.complete(
            system=HRN_SYSTEM_PROMPT,
            prompt=prompt,
            temperature=LLM_TEMPERATURE,
        )
        if raw is None:
            return self._unavailable()

        decision = parse_classifier_output(raw)
        logger.info(
            f"HRN model decision: hrn={decision.hrn} "
            f"confidence={decision.confidence:.2f} signals={decision.signals}"
        )
        return decision

    @staticmethod
    def _unavailable() -> HRNDecision:
        logger.warning("HRN model unavailable, escalating to human")
        return HRNDecision(
            hrn=True,
            confidence=0.2,
            signals=["llm_unavailable"],
            reason="Classifier unavailable; defaulting to HRN for safety.",
        )
