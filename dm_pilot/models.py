"""
Domain types shared across DM Pilot.

Closed variants (scope, response type, stage, ...) are Enums so that the
matching and logging call sites can branch on them exhaustively. Stores
hand back the dataclasses below for the three core entities; append-only
logs and dead letter items stay plain dicts, like any other row.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from dm_pilot.utils import parse_timestamp


class Scope(str, Enum):
    """Which inbound surface an automation applies to."""

    DM = "dm"
    COMMENT = "comment"
    BOTH = "both"


class ResponseType(str, Enum):
    """How an automation builds its reply."""

    FIXED = "fixed"
    AI_PROMPT = "ai_prompt"
    GENERIC_TEMPLATE = "generic_template"


class AutomationAction(str, Enum):
    """Action tag written to the automation usage log."""

    DM_AUTOMATION_TRIGGERED = "dm_automation_triggered"
    COMMENT_AUTOMATION_TRIGGERED = "comment_automation_triggered"
    DM_AND_COMMENT_AUTOMATION_TRIGGERED = "dm_and_comment_automation_triggered"


class DeliveryResult(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class Stage(str, Enum):
    NEW = "new"
    LEAD = "lead"
    FOLLOW_UP = "follow-up"
    GHOSTED = "ghosted"


class Sentiment(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    NEUTRAL = "neutral"
    GHOSTED = "ghosted"


class ErrorKind(str, Enum):
    """Failure classes of the platform API client."""

    TOKEN_EXPIRED = "token_expired"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"
    NETWORK_ERROR = "network_error"


class WebhookOutcome(Enum):
    """Where the webhook state machine stopped."""

    IGNORED = "ignored"
    HRN_STICKY = "hrn_sticky"
    HRN_FLAGGED = "hrn_flagged"
    DUPLICATE = "duplicate"
    HRN_ENFORCED = "hrn_enforced"
    NO_REPLY = "no_reply"
    SENT = "sent"
    FAILED = "failed"
    COMMENTS_PROCESSED = "comments_processed"
    ERROR = "error"


def _coerce(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def parse_stage(value: Any, default: Stage = Stage.NEW) -> Stage:
    return _coerce(Stage, value, default)


def parse_sentiment(value: Any, default: Sentiment = Sentiment.NEUTRAL) -> Sentiment:
    return _coerce(Sentiment, value, default)


def parse_scope(value: Any) -> Optional[Scope]:
    """Parse a stored scope; unknown or missing values mean no scope set."""
    if not value:
        return None
    return _coerce(Scope, value, None)


@dataclass
class Integration:
    """One connected platform account of a user."""

    id: str
    user_id: str
    instagram_user_id: str
    username: str
    access_token: str
    expires_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    sync_interval_hours: Optional[int] = None
    needs_reconnect: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any], access_token: str) -> "Integration":
        interval = row.get("sync_interval_hours")
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            instagram_user_id=str(row["instagram_user_id"]),
            username=row.get("username") or "",
            access_token=access_token,
            expires_at=parse_timestamp(row.get("expires_at")),
            last_synced_at=parse_timestamp(row.get("last_synced_at")),
            sync_interval_hours=int(interval) if interval is not None else None,
            needs_reconnect=bool(row.get("needs_reconnect")),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def __repr__(self) -> str:
        # Keep the access token out of logs and tracebacks
        return (
            f"Integration(id={self.id!r}, user_id={self.user_id!r}, "
            f"instagram_user_id={self.instagram_user_id!r}, username={self.username!r})"
        )


@dataclass
class Contact:
    """CRM record for one remote participant of a user."""

    user_id: str
    id: str
    username: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    stage: Stage = Stage.NEW
    sentiment: Sentiment = Sentiment.NEUTRAL
    lead_score: int = 0
    lead_value: float = 0
    next_action: Optional[str] = None
    notes: Optional[str] = None
    trigger_matched: bool = False
    followup_needed: bool = False
    requires_human_response: bool = False
    human_response_set_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Contact":
        return cls(
            user_id=str(row["user_id"]),
            id=str(row["id"]),
            username=row.get("username"),
            last_message=row.get("last_message"),
            last_message_at=parse_timestamp(row.get("last_message_at")),
            stage=parse_stage(row.get("stage")),
            sentiment=parse_sentiment(row.get("sentiment")),
            lead_score=int(row.get("lead_score") or 0),
            lead_value=float(row.get("lead_value") or 0),
            next_action=row.get("next_action"),
            notes=row.get("notes"),
            trigger_matched=bool(row.get("trigger_matched")),
            followup_needed=bool(row.get("followup_needed")),
            requires_human_response=bool(row.get("requires_human_response")),
            human_response_set_at=parse_timestamp(row.get("human_response_set_at")),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass
class Automation:
    """User-authored trigger rule."""

    id: str
    user_id: str
    title: str
    trigger_word: str
    response_type: Optional[ResponseType]
    response_content: str
    trigger_scope: Optional[Scope] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    comment_reply_text: Optional[str] = None
    hrn_enforced: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Automation":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title") or "",
            trigger_word=row.get("trigger_word") or "",
            response_type=_coerce(ResponseType, row.get("response_type"), None),
            response_content=row.get("response_content") or "",
            trigger_scope=parse_scope(row.get("trigger_scope")),
            is_active=bool(row.get("is_active")),
            expires_at=parse_timestamp(row.get("expires_at")),
            comment_reply_text=row.get("comment_reply_text"),
            hrn_enforced=bool(row.get("hrn_enforced")),
            created_at=parse_timestamp(row.get("created_at")),
        )

    @property
    def effective_scope(self) -> Scope:
        """Legacy rules without a scope are DM rules."""
        return self.trigger_scope or Scope.DM

    def is_live(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at > now)


@dataclass
class HRNDecision:
    """Result of the human-response-needed classifier."""

    hrn: bool
    confidence: float
    signals: list[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class AnalysisResult:
    """Lead analysis of one conversation."""

    stage: Stage = Stage.NEW
    sentiment: Sentiment = Sentiment.NEUTRAL
    lead_score: int = 0
    next_action: str = ""
    lead_value: float = 0


@dataclass
class SendResult:
    """Outcome of a send helper. Send helpers never raise."""

    status: int
    message_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    retry_after: Optional[float] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class RefreshedToken:
    access_token: str
    expires_at: datetime


@dataclass
class SyncedContact:
    """Contact as reported by a sync run."""

    id: str
    name: str
    last_message: str
    timestamp: Optional[datetime]
    messages: list[str]
    analysis: AnalysisResult
    followup_needed: bool = False


@dataclass
class ProcessResult:
    """Webhook processor result. Status is always "ok" so the platform stops redelivering."""

    outcome: WebhookOutcome
    detail: Optional[str] = None
    status: str = "ok"
