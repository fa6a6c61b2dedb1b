"""
Tests for the SQLite store.
"""

from datetime import timedelta

import pytest

from dm_pilot.database_sqlite import SQLiteDatabase
from dm_pilot.models import Contact, Sentiment, Stage
from dm_pilot.utils import utcnow


class TestIntegrations:
    @pytest.mark.asyncio
    async def test_token_encrypted_at_rest(self, db, make_integration):
        await db.save_integration(make_integration())

        raw = db.conn.execute("SELECT access_token FROM integrations").fetchone()[0]
        assert raw != "token-abc"
        assert (await db.get_integration("int-1")).access_token == "token-abc"

    @pytest.mark.asyncio
    async def test_plaintext_without_cipher(self, make_integration):
        plain = SQLiteDatabase(":memory:")
        await plain.save_integration(make_integration())
        raw = plain.conn.execute("SELECT access_token FROM integrations").fetchone()[0]
        assert raw == "token-abc"
        plain.close()

    @pytest.mark.asyncio
    async def test_lookups(self, db, make_integration):
        await db.save_integration(make_integration())

        assert (await db.get_integration_by_account("ig-biz-1")).id == "int-1"
        assert (await db.get_integration_for_user("user-1")).username == "acme_studio"
        assert await db.get_integration_by_account("unknown") is None

    @pytest.mark.asyncio
    async def test_reconnect_flag(self, db, make_integration, now):
        await db.save_integration(make_integration())

        await db.mark_needs_reconnect("int-1")
        assert (await db.get_integration("int-1")).needs_reconnect

        await db.update_integration_token("int-1", "token-new", now + timedelta(days=60))
        integration = await db.get_integration("int-1")
        assert not integration.needs_reconnect
        assert integration.access_token == "token-new"


class TestContacts:
    """HRN flag handling and sync upserts."""

    @pytest.mark.asyncio
    async def test_flag_keeps_first_timestamp(self, db, now):
        await db.flag_human_response("user-1", "cust-1", "refund?", now)
        await db.flag_human_response("user-1", "cust-1", "hello??", now + timedelta(hours=1))

        contact = await db.get_contact("user-1", "cust-1")
        assert contact.requires_human_response
        assert contact.human_response_set_at == now
        assert contact.last_message == "hello??"

    @pytest.mark.asyncio
    async def test_touch_never_clears_flag(self, db, now):
        await db.flag_human_response("user-1", "cust-1", "refund?", now)
        await db.touch_contact("user-1", "cust-1", "ok", now + timedelta(minutes=5))

        assert (await db.get_contact("user-1", "cust-1")).requires_human_response

    @pytest.mark.asyncio
    async def test_clear_human_response(self, db, now):
        await db.flag_human_response("user-1", "cust-1", "refund?", now)

        assert await db.clear_human_response("user-1", "cust-1")
        contact = await db.get_contact("user-1", "cust-1")
        assert not contact.requires_human_response
        assert contact.human_response_set_at is None
        assert not await db.clear_human_response("user-1", "nobody")

    @pytest.mark.asyncio
    async def test_upsert_modes(self, db, now):
        await db.flag_human_response("user-1", "cust-1", "refund?", now)
        full = Contact(
            user_id="user-1", id="cust-1", username="jane", last_message="hi",
            last_message_at=now, stage=Stage.LEAD, sentiment=Sentiment.HOT, lead_score=80,
        )
        await db.upsert_synced_contacts("user-1", [full], full_sync=True)

        incremental = Contact(
            user_id="user-1", id="cust-1", username="renamed", last_message="later",
            last_message_at=now + timedelta(days=2), stage=Stage.GHOSTED,
            sentiment=Sentiment.COLD, lead_score=5, followup_needed=True,
        )
        await db.upsert_synced_contacts("user-1", [incremental], full_sync=False)

        contact = await db.get_contact("user-1", "cust-1")
        assert contact.stage == Stage.LEAD
        assert contact.sentiment == Sentiment.HOT
        assert contact.lead_score == 80
        assert contact.username == "jane"
        assert contact.last_message == "later"
        assert contact.followup_needed
        assert contact.requires_human_response

    @pytest.mark.asyncio
    async def test_get_contacts_batch(self, db, now):
        await db.touch_contact("user-1", "a", "hi", now)
        await db.touch_contact("user-1", "b", "hi", now)
        await db.touch_contact("user-2", "c", "hi", now)

        found = await db.get_contacts("user-1", ["a", "c", "zzz"])

        assert set(found) == {"a"}
        assert await db.get_contacts("user-1", []) == {}


class TestAutomations:
    @pytest.mark.asyncio
    async def test_active_in_creation_order(self, db, make_automation, now):
        late = make_automation(id="late", created_at=now - timedelta(days=1))
        early = make_automation(id="early", created_at=now - timedelta(days=5))
        expired = make_automation(id="expired", expires_at=now - timedelta(minutes=1))
        inactive = make_automation(id="inactive", is_active=False)
        for automation in (late, early, expired, inactive):
            await db.save_automation(automation)

        active = await db.get_active_automations("user-1", now)

        assert [a.id for a in active] == ["early", "late"]


class TestDedup:
    @pytest.mark.asyncio
    async def test_claim_is_idempotent(self, db):
        assert await db.claim_webhook_message("user-1", "mid.1")
        assert not await db.claim_webhook_message("user-1", "mid.1")
        assert await db.claim_webhook_message("user-2", "mid.1")

    @pytest.mark.asyncio
    async def test_recent_action(self, db):
        await db.add_action_log(
            user_id="user-1", thread_id="t-1", recipient_id="c", action="sent_reply",
            text="hi", result="sent",
        )
        assert await db.has_recent_action("user-1", "t-1", utcnow() - timedelta(seconds=30))
        assert not await db.has_recent_action("user-1", "t-2", utcnow() - timedelta(seconds=30))
        assert not await db.has_recent_action("user-1", "t-1", utcnow() + timedelta(seconds=1))


class TestDeadLetterQueue:
    """Outbox status transitions."""

    async def _queue(self, db) -> str:
        return await db.add_to_dead_letter_queue(
            user_id="user-1", integration_id="int-1", ig_user_id="ig-biz-1",
            recipient_id="cust-1", thread_id="ig-biz-1:cust-1", text="hi",
        )

    @pytest.mark.asyncio
    async def test_statuses(self, db):
        item_id = await self._queue(db)

        assert await db.retry_dead_letter_item(item_id, success=False, max_retries=2) == "pending"
        assert await db.retry_dead_letter_item(item_id, success=False, max_retries=2) == "exhausted"
        assert await db.get_dead_letter_items() == []
        assert await db.get_dead_letter_stats() == {"pending": 0, "exhausted": 1, "total": 1}

    @pytest.mark.asyncio
    async def test_success(self, db):
        item_id = await self._queue(db)

        assert await db.retry_dead_letter_item(item_id, success=True) == "retried_successfully"
        assert (await db.get_dead_letter_stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_no_token_column(self, db):
        await self._queue(db)
        columns = [row[1] for row in db.conn.execute("PRAGMA table_info(failed_sends)")]
        assert "access_token" not in columns
