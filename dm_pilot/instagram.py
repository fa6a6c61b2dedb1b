"""
Instagram operations on top of the Graph client.

Send helpers (DMs, comment DMs, templates, public replies) never raise:
every failure is folded into a `SendResult` so the webhook path can log
it and move on. Fetch helpers used by sync raise `GraphAPIError` so the
pipeline can tell an expired token apart from a bad conversation.

Endpoints:
    POST /{ver}/{ig_user_id}/messages      DM / comment DM / generic template
    POST /{ver}/{comment_id}/replies       public comment reply
    GET  /{ver}/me/conversations           conversation list
    GET  /{ver}/{conversation_id}/messages message history
    GET  /refresh_access_token             long-lived token refresh
    GET  /me                               token validation
"""

import hashlib
import hmac
import logging
from datetime import timedelta
from typing import Any, Optional

from dm_pilot.graph_client import GraphAPIError, GraphClient
from dm_pilot.models import ErrorKind, RefreshedToken, SendResult
from dm_pilot.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_LIMIT = 10
CONVERSATION_FIELDS = "participants,updated_time"
SYNC_CONVERSATION_FIELDS = "participants,messages{from,message,created_time},updated_time"
MESSAGE_FIELDS = "from{id,username},message,created_time"


def verify_webhook_signature(raw_body: bytes, signature_header: Optional[str], app_secret: str) -> bool:
    """
    Check an `X-Hub-Signature-256: sha256=<hex>` header against the raw body.

    Returns False for a missing header, a missing secret, or a malformed value.
    """
    if not signature_header or not app_secret:
        return False

    algorithm, _, received = signature_header.partition("=")
    if algorithm != "sha256" or not received:
        return False

    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(received, expected)


def _message_id(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    value = data.get("message_id") or data.get("id")
    return str(value) if value else None


class InstagramAPI:
    """Platform operations used by the processor, sync and token manager."""

    def __init__(self, client: GraphClient) -> None:
        self.client = client

    # =========================================================================
    # Sends
    # =========================================================================

    async def _send(self, path: str, access_token: str, body: dict, action: str) -> SendResult:
        try:
            response = await self.client.request(
                "POST", path, access_token=access_token, json=body
            )
        except GraphAPIError as e:
            logger.warning(f"Send failed ({action}): {e.kind.value} status={e.status}")
            return SendResult(
                status=e.status or 0,
                error_kind=e.kind,
                retry_after=e.retry_after,
            )
        return SendResult(status=response.status, message_id=_message_id(response.data))

    async def send_message(
        self,
        ig_user_id: str,
        recipient_id: str,
        access_token: str,
        text: str,
    ) -> SendResult:
        """Send a plain-text DM."""
        body = {
            "messaging_product": "instagram",
            "recipient": {"id": recipient_id},
            "message": {"text": text},
        }
        path = self.client.versioned(f"/{ig_user_id}/messages")
        return await self._send(path, access_token, body, "send_message")

    async def send_comment_reply(
        self,
        ig_user_id: str,
        comment_id: str,
        access_token: str,
        text: str,
    ) -> SendResult:
        """Send a private DM reply to the author of a comment."""
        body = {
            "messaging_product": "instagram",
            "recipient": {"comment_id": comment_id},
            "message": {"text": text},
        }
        path = self.client.versioned(f"/{ig_user_id}/messages")
        return await self._send(path, access_token, body, "send_comment_reply")

    async def send_comment_generic_template(
        self,
        ig_user_id: str,
        comment_id: str,
        access_token: str,
        elements: list[dict],
    ) -> SendResult:
        """Send a generic template (rich cards) as a private reply to a comment."""
        body = {
            "messaging_product": "instagram",
            "recipient": {"comment_id": comment_id},
            "message": {
                "attachment": {
                    "type": "template",
                    "payload": {"template_type": "generic", "elements": elements},
                }
            },
        }
        path = self.client.versioned(f"/{ig_user_id}/messages")
        return await self._send(path, access_token, body, "send_comment_generic_template")

    async def post_public_comment_reply(
        self,
        comment_id: str,
        access_token: str,
        message: str,
    ) -> SendResult:
        """Post a visible reply under a comment."""
        path = self.client.versioned(f"/{comment_id}/replies")
        return await self._send(path, access_token, {"message": message}, "public_comment_reply")

    # =========================================================================
    # Conversations
    # =========================================================================

    async def fetch_conversations(
        self,
        access_token: str,
        include_messages: bool = False,
        post_request_delay: float = 0.0,
    ) -> list[dict]:
        """
        List the account's conversations.

        Items without a `participants.data` list are dropped.

        Raises:
            GraphAPIError: On any final failure, or an invalid payload shape.
        """
        response = await self.client.request(
            "GET",
            self.client.versioned("/me/conversations"),
            access_token=access_token,
            params={"fields": SYNC_CONVERSATION_FIELDS if include_messages else CONVERSATION_FIELDS},
            post_request_delay=post_request_delay,
        )

        data = response.data.get("data") if isinstance(response.data, dict) else None
        if not isinstance(data, list):
            raise GraphAPIError(
                "Instagram API returned invalid data format",
                kind=ErrorKind.API_ERROR,
                status=response.status,
                data=response.data,
            )

        return [
            item for item in data
            if isinstance(item, dict)
            and isinstance(item.get("participants"), dict)
            and isinstance(item["participants"].get("data"), list)
        ]

    async def fetch_conversation_messages(
        self,
        access_token: str,
        conversation_id: str,
        limit: int = DEFAULT_MESSAGE_LIMIT,
        post_request_delay: float = 0.0,
    ) -> list[dict]:
        """
        Fetch the most recent messages of a conversation, newest first.

        Raises:
            GraphAPIError: On any final failure.
        """
        response = await self.client.request(
            "GET",
            self.client.versioned(f"/{conversation_id}/messages"),
            access_token=access_token,
            params={"fields": MESSAGE_FIELDS, "limit": limit},
            post_request_delay=post_request_delay,
        )

        data = response.data.get("data") if isinstance(response.data, dict) else None
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    # =========================================================================
    # Tokens
    # =========================================================================

    async def refresh_long_lived_token(self, access_token: str) -> RefreshedToken:
        """
        Exchange a long-lived token for a fresh one.

        Raises:
            GraphAPIError: On HTTP failure or a response without token/expiry.
        """
        response = await self.client.request(
            "GET",
            "/refresh_access_token",
            params={"grant_type": "ig_refresh_token", "access_token": access_token},
        )

        data = response.data if isinstance(response.data, dict) else {}
        new_token = data.get("access_token")
        expires_in = data.get("expires_in")
        if not new_token or not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
            raise GraphAPIError(
                f"Failed to refresh Instagram token ({response.status})",
                kind=ErrorKind.API_ERROR,
                status=response.status,
            )

        return RefreshedToken(
            access_token=new_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )

    async def validate_token(self, access_token: str) -> bool:
        """Single-attempt check that a token still works."""
        try:
            await self.client.request(
                "GET",
                "/me",
                params={"fields": "id,username", "access_token": access_token},
                max_retries=1,
            )
        except GraphAPIError as e:
            logger.info(f"Token validation failed: {e.kind.value}")
            return False
        return True
