"""
Pytest fixtures and configuration.

This module provides shared fixtures for all tests:
- In-memory SQLite store (with token encryption enabled)
- Mock clients for the generation service and the Instagram API
- A Graph client backed by httpx.MockTransport
- Sample data factories (integrations, automations, webhook payloads)
- Time fixtures

Usage:
    async def test_something(db, mock_instagram, make_integration):
        await db.save_integration(make_integration())
"""

from datetime import datetime, timedelta, timezone
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from cryptography.fernet import Fernet
from freezegun import freeze_time

from dm_pilot.alerts import AlertManager
from dm_pilot.database_sqlite import SQLiteDatabase
from dm_pilot.graph_client import GraphClient
from dm_pilot.instagram import InstagramAPI
from dm_pilot.models import Automation, Integration, ResponseType, Scope, SendResult
from dm_pilot.token_cipher import TokenCipher


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring multiple components"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (>1s execution time)"
    )


# =============================================================================
# Time Fixtures
# =============================================================================

NOW = datetime(2025, 11, 26, 14, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    """Fixed reference time for clock-injected components."""
    return NOW


@pytest.fixture
def frozen_time():
    """Freeze time at a specific datetime for testing."""
    with freeze_time(NOW):
        yield NOW


@pytest.fixture
def no_sleep():
    """Async sleep replacement that records requested delays."""
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays
    return sleep


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(Fernet.generate_key().decode())


@pytest.fixture
def db(cipher):
    """
    Provide a fresh in-memory SQLite store.

    Tokens are encrypted at rest exactly as in production.
    """
    database = SQLiteDatabase(":memory:", cipher=cipher)
    yield database
    database.close()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture
def mock_ai_client():
    """Provide mock generation client. `complete` returns nothing by default."""
    client = AsyncMock()
    client.complete.return_value = None
    client.generate_automation_response.return_value = None
    client.health_check.return_value = True
    return client


@pytest.fixture
def mock_instagram():
    """Provide mock Instagram API whose sends succeed."""
    instagram = AsyncMock(spec=InstagramAPI)
    instagram.send_message.return_value = SendResult(status=200, message_id="m_out_1")
    instagram.send_comment_reply.return_value = SendResult(status=200, message_id="m_out_2")
    instagram.send_comment_generic_template.return_value = SendResult(status=200, message_id="m_out_3")
    instagram.post_public_comment_reply.return_value = SendResult(status=200, message_id="c_reply_1")
    instagram.fetch_conversations.return_value = []
    instagram.fetch_conversation_messages.return_value = []
    return instagram


@pytest.fixture
def mock_alerts():
    """Provide an AlertManager whose methods are recorded."""
    alerts = MagicMock(spec=AlertManager)
    alerts.info = AsyncMock()
    alerts.warning = AsyncMock()
    alerts.error = AsyncMock()
    alerts.critical = AsyncMock()
    alerts.notify = AsyncMock()
    return alerts


@pytest.fixture
def make_graph_client(no_sleep) -> Callable[..., GraphClient]:
    """
    Build a GraphClient whose HTTP traffic goes to `handler`.

    Usage:
        client = make_graph_client(lambda request: httpx.Response(200, json={}))
    """
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> GraphClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(http)
        return GraphClient(http_client=http, sleep=no_sleep, **kwargs)

    return _make


# =============================================================================
# Data Fixtures
# =============================================================================

@pytest.fixture
def make_integration(now):
    """Factory for integrations; defaults describe a healthy account."""
    def _make(**overrides) -> Integration:
        values = {
            "id": "int-1",
            "user_id": "user-1",
            "instagram_user_id": "ig-biz-1",
            "username": "acme_studio",
            "access_token": "token-abc",
            "expires_at": now + timedelta(days=50),
            "last_synced_at": None,
            "sync_interval_hours": None,
            "needs_reconnect": False,
        }
        values.update(overrides)
        return Integration(**values)
    return _make


@pytest.fixture
def make_automation(now):
    """Factory for automations; defaults to an active fixed-text DM rule."""
    counter = {"n": 0}

    def _make(**overrides) -> Automation:
        counter["n"] += 1
        values = {
            "id": f"auto-{counter['n']}",
            "user_id": "user-1",
            "title": "Price info",
            "trigger_word": "price",
            "response_type": ResponseType.FIXED,
            "response_content": "Plans start at $99/mo",
            "trigger_scope": Scope.DM,
            "is_active": True,
            "expires_at": None,
            "comment_reply_text": None,
            "hrn_enforced": False,
            "created_at": now - timedelta(days=10) + timedelta(minutes=counter["n"]),
        }
        values.update(overrides)
        return Automation(**values)
    return _make


@pytest.fixture
def dm_payload():
    """Factory for a direct-message webhook payload."""
    def _make(
        text: str = "what's the price?",
        sender_id: str = "cust-1",
        account_id: str = "ig-biz-1",
        mid: str | None = "mid.1",
        is_echo: bool = False,
    ) -> dict:
        message = {"text": text}
        if mid is not None:
            message["mid"] = mid
        if is_echo:
            message["is_echo"] = True
        return {
            "object": "instagram",
            "entry": [{
                "id": account_id,
                "time": 1732631400,
                "messaging": [{
                    "sender": {"id": sender_id},
                    "recipient": {"id": account_id},
                    "timestamp": 1732631400,
                    "message": message,
                }],
            }],
        }
    return _make


@pytest.fixture
def comment_payload():
    """Factory for a comment-change webhook payload."""
    def _make(
        text: str = "price?",
        comment_id: str = "comment-1",
        commenter_id: str = "cust-9",
        account_id: str = "ig-biz-1",
    ) -> dict:
        return {
            "object": "instagram",
            "entry": [{
                "id": account_id,
                "time": 1732631400,
                "changes": [{
                    "field": "comments",
                    "value": {
                        "id": comment_id,
                        "text": text,
                        "from": {"id": commenter_id, "username": "commenter"},
                        "media": {"id": "media-1"},
                    },
                }],
            }],
        }
    return _make


@pytest.fixture
def assert_datetime_close():
    """
    Provide helper to assert two datetimes are close.

    Useful for timestamps written with the real clock.
    """
    def _assert_close(dt1: datetime, dt2: datetime, tolerance_seconds: int = 5):
        delta = abs((dt1 - dt2).total_seconds())
        assert delta <= tolerance_seconds, (
            f"Datetimes not within {tolerance_seconds}s: "
            f"{dt1} vs {dt2} (delta: {delta}s)"
        )
    return _assert_close
