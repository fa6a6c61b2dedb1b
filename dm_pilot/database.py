"""
Database Client - Supabase integration for persistence.

This module handles all store operations using Supabase as the backend.
`SQLiteDatabase` (database_sqlite.py) implements the same API.

Tables:
    integrations:       connected platform accounts (token encrypted at rest)
    contacts:           CRM rows keyed by (user_id, id)
    automations:        user-authored trigger rules
    action_logs:        append-only record of every delivery attempt
    webhook_receipts:   claimed provider message ids (deduplication)
    automation_action_logs: append-only automation usage records
    failed_sends:       dead letter queue for DMs that could not be delivered
    business_profiles, tone_profiles, offers, faqs, sidekick_settings:
                        personalization, written by the dashboard

SQL Setup (run in Supabase SQL Editor):
    CREATE TABLE integrations (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE,
        instagram_user_id TEXT NOT NULL UNIQUE,
        username TEXT,
        access_token TEXT NOT NULL,
        expires_at TIMESTAMPTZ,
        last_synced_at TIMESTAMPTZ,
        sync_interval_hours INT,
        needs_reconnect BOOLEAN DEFAULT false,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );

    CREATE TABLE contacts (
        user_id TEXT NOT NULL,
        id TEXT NOT NULL,
        username TEXT,
        last_message TEXT,
        last_message_at TIMESTAMPTZ,
        stage TEXT DEFAULT 'new',
        sentiment TEXT DEFAULT 'neutral',
        lead_score INT DEFAULT 0,
        lead_value NUMERIC DEFAULT 0,
        next_action TEXT,
        notes TEXT,
        trigger_matched BOOLEAN DEFAULT false,
        followup_needed BOOLEAN DEFAULT false,
        requires_human_response BOOLEAN DEFAULT false,
        human_response_set_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        PRIMARY KEY (user_id, id)
    );

    CREATE TABLE automations (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT,
        trigger_word TEXT NOT NULL,
        trigger_scope TEXT CHECK (trigger_scope IN ('dm', 'comment', 'both')),
        response_type TEXT NOT NULL,
        response_content TEXT NOT NULL,
        is_active BOOLEAN DEFAULT true,
        expires_at TIMESTAMPTZ,
        comment_reply_text TEXT,
        hrn_enforced BOOLEAN DEFAULT false,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );

    CREATE TABLE action_logs (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        user_id TEXT NOT NULL,
        platform TEXT NOT NULL,
        thread_id TEXT NOT NULL,
        recipient_id TEXT NOT NULL,
        action TEXT NOT NULL,
        text TEXT,
        result TEXT NOT NULL CHECK (result IN ('sent', 'failed')),
        message_id TEXT,
        webhook_mid TEXT,
        retry_of UUID,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );

    CREATE UNIQUE INDEX idx_action_logs_webhook_mid
        ON action_logs(user_id, webhook_mid) WHERE webhook_mid IS NOT NULL;
    CREATE INDEX idx_action_logs_thread
        ON action_logs(user_id, thread_id, created_at DESC);

    CREATE TABLE webhook_receipts (
        user_id TEXT NOT NULL,
        webhook_mid TEXT NOT NULL,
        received_at TIMESTAMPTZ DEFAULT NOW(),
        PRIMARY KEY (user_id, webhook_mid)
    );

    CREATE TABLE automation_action_logs (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        user_id TEXT NOT NULL,
        platform TEXT NOT NULL,
        thread_id TEXT NOT NULL,
        recipient_id TEXT NOT NULL,
        automation_id UUID NOT NULL,
        trigger_word TEXT,
        action TEXT NOT NULL,
        text TEXT,
        message_id TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );

    -- Failed sends (Dead Letter Queue). No access token is stored here.
    CREATE TABLE failed_sends (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        user_id TEXT NOT NULL,
        integration_id UUID NOT NULL,
        ig_user_id TEXT NOT NULL,
        recipient_id TEXT NOT NULL,
        thread_id TEXT NOT NULL,
        text TEXT NOT NULL,
        action_log_id UUID,
        error TEXT,
        retry_count INT DEFAULT 0,
        status TEXT DEFAULT 'pending',
        created_at TIMESTAMPTZ DEFAULT NOW(),
        last_retry_at TIMESTAMPTZ
    );

    CREATE TABLE business_profiles (
        user_id TEXT PRIMARY KEY,
        name TEXT,
        business_type TEXT,
        main_offering TEXT,
        use_cases JSONB,
        pilot_goals JSONB,
        leads_per_month TEXT
    );
    CREATE TABLE tone_profiles (user_id TEXT PRIMARY KEY, tone_type TEXT);
    CREATE TABLE offers (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        user_id TEXT NOT NULL, name TEXT NOT NULL, content TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    CREATE TABLE faqs (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        user_id TEXT NOT NULL, question TEXT NOT NULL, answer TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    CREATE TABLE sidekick_settings (user_id TEXT PRIMARY KEY, system_prompt TEXT);

    -- Sticky HRN flag: keep the first flag time
    CREATE OR REPLACE FUNCTION flag_human_response(
        p_user_id TEXT, p_contact_id TEXT, p_message TEXT, p_at TIMESTAMPTZ
    ) RETURNS void AS $$
        INSERT INTO contacts (user_id, id, last_message, last_message_at,
                              requires_human_response, human_response_set_at, updated_at)
        VALUES (p_user_id, p_contact_id, p_message, p_at, true, p_at, p_at)
        ON CONFLICT (user_id, id) DO UPDATE SET
            last_message = EXCLUDED.last_message,
            last_message_at = EXCLUDED.last_message_at,
            requires_human_response = true,
            human_response_set_at = COALESCE(contacts.human_response_set_at, EXCLUDED.human_response_set_at),
            updated_at = EXCLUDED.updated_at;
    $$ LANGUAGE sql;

    -- Sync batch upsert with a mode-dependent update set
    CREATE OR REPLACE FUNCTION upsert_synced_contacts(
        p_user_id TEXT, p_rows JSONB, p_full_sync BOOLEAN
    ) RETURNS void AS $$
        INSERT INTO contacts (user_id, id, username, last_message, last_message_at,
                              stage, sentiment, lead_score, lead_value, next_action,
                              followup_needed, updated_at)
        SELECT p_user_id, r.id, r.username, r.last_message, r.last_message_at,
               COALESCE(r.stage, 'new'), COALESCE(r.sentiment, 'neutral'),
               COALESCE(r.lead_score, 0), COALESCE(r.lead_value, 0), r.next_action,
               COALESCE(r.followup_needed, false), NOW()
        FROM jsonb_to_recordset(p_rows) AS r(
            id TEXT, username TEXT, last_message TEXT, last_message_at TIMESTAMPTZ,
            stage TEXT, sentiment TEXT, lead_score INT, lead_value NUMERIC,
            next_action TEXT, followup_needed BOOLEAN)
        ON CONFLICT (user_id, id) DO UPDATE SET
            username = CASE WHEN p_full_sync THEN EXCLUDED.username ELSE contacts.username END,
            stage = CASE WHEN p_full_sync THEN EXCLUDED.stage ELSE contacts.stage END,
            sentiment = CASE WHEN p_full_sync THEN EXCLUDED.sentiment ELSE contacts.sentiment END,
            lead_score = CASE WHEN p_full_sync THEN EXCLUDED.lead_score ELSE contacts.lead_score END,
            next_action = CASE WHEN p_full_sync THEN EXCLUDED.next_action ELSE contacts.next_action END,
            lead_value = CASE WHEN p_full_sync THEN EXCLUDED.lead_value ELSE contacts.lead_value END,
            last_message = EXCLUDED.last_message,
            last_message_at = EXCLUDED.last_message_at,
            followup_needed = EXCLUDED.followup_needed,
            updated_at = EXCLUDED.updated_at;
    $$ LANGUAGE sql;
"""

import logging
from datetime import datetime
from typing import Optional

from supabase import Client, create_client

from dm_pilot.models import Automation, Contact, Integration
from dm_pilot.resilience import with_backoff
from dm_pilot.token_cipher import TokenCipher
from dm_pilot.utils import to_iso, utcnow

logger = logging.getLogger(__name__)


class Database:
    """
    Supabase client for integrations, contacts, automations and logs.

    Provides async-friendly methods for every store operation used by the
    webhook processor, the sync pipeline and the background worker.

    Features:
    - Automatic connection recovery
    - Dead letter queue for failed sends
    - Access tokens encrypted at rest
    - Health monitoring
    """

    def __init__(
        self,
        url: str,
        key: str,
        cipher: Optional[TokenCipher] = None,
    ) -> None:
        """
        Initialize database connection.

        Args:
            url: Supabase project URL.
            key: Supabase service key.
            cipher: Encrypts access tokens on write, decrypts on read.
        """
        self._url = url
        self._key = key
        self.cipher = cipher
        self.client: Optional[Client] = None
        self._is_connected = False

        self._connect()
        logger.info("Database client initialized")

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            url = self._url.rstrip("/")
            logger.info(f"Connecting to database at: {url}")
            self.client = create_client(url, self._key)
            self._is_connected = True
            logger.info("Database connection established")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            self._is_connected = False
            raise

    @with_backoff(max_retries=3, base_delay=1, max_delay=10)
    async def _ensure_connection(self) -> None:
        """
        Ensure database connection is active, reconnect if needed.

        Raises:
            Exception: If reconnection fails after retries.
        """
        if not self._is_connected or self.client is None:
            logger.warning("Database connection lost, attempting reconnect...")
            self._connect()

    async def health_check(self) -> bool:
        """
        Check database connection health.

        Returns:
            True if database is accessible, False otherwise.
        """
        try:
            await self._ensure_connection()
            self.client.table("integrations").select("id", count="exact").limit(1).execute()
            logger.debug("Database health check: OK")
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            self._is_connected = False
            return False

    # =========================================================================
    # Integrations
    # =========================================================================

    def _encrypt(self, token: str) -> str:
        return self.cipher.encrypt(token) if self.cipher else token

    def _to_integration(self, row: Optional[dict]) -> Optional[Integration]:
        if not row:
            return None
        token = row["access_token"]
        if self.cipher and token:
            token = self.cipher.decrypt(token)
        return Integration.from_row(row, access_token=token)

    async def _integration_where(self, column: str, value: str) -> Optional[Integration]:
        await self._ensure_connection()
        result = self.client.table("integrations").select("*").eq(column, value).limit(1).execute()
        return self._to_integration(result.data[0] if result.data else None)

    async def save_integration(self, integration: Integration) -> None:
        """Insert or replace an integration (written by the account connect flow)."""
        await self._ensure_connection()
        self.client.table("integrations").upsert({
            "id": integration.id,
            "user_id": integration.user_id,
            "instagram_user_id": integration.instagram_user_id,
            "username": integration.username,
            "access_token": self._encrypt(integration.access_token),
            "expires_at": to_iso(integration.expires_at),
            "last_synced_at": to_iso(integration.last_synced_at),
            "sync_interval_hours": integration.sync_interval_hours,
            "needs_reconnect": integration.needs_reconnect,
            "updated_at": to_iso(utcnow()),
        }).execute()

    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        return await self._integration_where("id", integration_id)

    async def get_integration_by_account(self, instagram_user_id: str) -> Optional[Integration]:
        return await self._integration_where("instagram_user_id", instagram_user_id)

    async def get_integration_for_user(self, user_id: str) -> Optional[Integration]:
        return await self._integration_where("user_id", user_id)

    async def list_integrations(self) -> list[Integration]:
        await self._ensure_connection()
        result = self.client.table("integrations").select("*").order("created_at").execute()
        return [self._to_integration(row) for row in result.data or []]

    async def get_expiring_integrations(self, before: datetime) -> list[Integration]:
        """Integrations whose token expires before `before`."""
        await self._ensure_connection()
        result = self.client.table("integrations").select(
            "*"
        ).lt(
            "expires_at", to_iso(before)
        ).order("expires_at").execute()
        return [self._to_integration(row) for row in result.data or []]

    async def update_integration_token(
        self,
        integration_id: str,
        access_token: str,
        expires_at: datetime,
    ) -> None:
        """Persist a refreshed token. Clears the reconnect flag."""
        await self._ensure_connection()
        self.client.table("integrations").update({
            "access_token": self._encrypt(access_token),
            "expires_at": to_iso(expires_at),
            "needs_reconnect": False,
            "updated_at": to_iso(utcnow()),
        }).eq("id", integration_id).execute()
        logger.info(f"Stored refreshed token for integration {integration_id}")

    async def mark_integration_synced(self, user_id: str, synced_at: datetime) -> None:
        await self._ensure_connection()
        self.client.table("integrations").update({
            "last_synced_at": to_iso(synced_at),
            "updated_at": to_iso(utcnow()),
        }).eq("user_id", user_id).execute()

    async def mark_needs_reconnect(self, integration_id: str, needs_reconnect: bool = True) -> None:
        await self._ensure_connection()
        self.client.table("integrations").update({
            "needs_reconnect": needs_reconnect,
            "updated_at": to_iso(utcnow()),
        }).eq("id", integration_id).execute()

    # =========================================================================
    # Contacts
    # =========================================================================

    async def get_contact(self, user_id: str, contact_id: str) -> Optional[Contact]:
        await self._ensure_connection()
        result = self.client.table("contacts").select(
            "*"
        ).eq("user_id", user_id).eq("id", contact_id).limit(1).execute()
        return Contact.from_row(result.data[0]) if result.data else None

    async def get_contacts(self, user_id: str, contact_ids: list[str]) -> dict[str, Contact]:
        if not contact_ids:
            return {}
        await self._ensure_connection()
        result = self.client.table("contacts").select(
            "*"
        ).eq("user_id", user_id).in_("id", contact_ids).execute()
        return {row["id"]: Contact.from_row(row) for row in result.data or []}

    async def touch_contact(
        self,
        user_id: str,
        contact_id: str,
        message_text: str,
        at: datetime,
    ) -> None:
        """Upsert the latest inbound message. Never touches HRN fields."""
        await self._ensure_connection()
        stamp = to_iso(at)
        self.client.table("contacts").upsert(
            {
                "user_id": user_id,
                "id": contact_id,
                "last_message": message_text,
                "last_message_at": stamp,
                "updated_at": stamp,
            },
            on_conflict="user_id,id",
        ).execute()

    async def flag_human_response(
        self,
        user_id: str,
        contact_id: str,
        message_text: str,
        at: datetime,
    ) -> None:
        """Set the sticky HRN flag, keeping the first `human_response_set_at`."""
        await self._ensure_connection()
        self.client.rpc("flag_human_response", {
            "p_user_id": user_id,
            "p_contact_id": contact_id,
            "p_message": message_text,
            "p_at": to_iso(at),
        }).execute()
        logger.info(f"Contact {contact_id} flagged for human response")

    async def clear_human_response(self, user_id: str, contact_id: str) -> bool:
        """Explicit human action: the only path that resets the HRN flag."""
        await self._ensure_connection()
        result = self.client.table("contacts").update({
            "requires_human_response": False,
            "human_response_set_at": None,
            "updated_at": to_iso(utcnow()),
        }).eq("user_id", user_id).eq("id", contact_id).execute()
        return bool(result.data)

    async def upsert_synced_contacts(
        self,
        user_id: str,
        contacts: list[Contact],
        full_sync: bool,
    ) -> None:
        """Batch upsert from a sync run (see `upsert_synced_contacts` SQL function)."""
        if not contacts:
            return
        await self._ensure_connection()
        rows = [
            {
                "id": contact.id,
                "username": contact.username,
                "last_message": contact.last_message,
                "last_message_at": to_iso(contact.last_message_at),
                "stage": contact.stage.value,
                "sentiment": contact.sentiment.value,
                "lead_score": contact.lead_score,
                "lead_value": contact.lead_value,
                "next_action": contact.next_action,
                "followup_needed": contact.followup_needed,
            }
            for contact in contacts
        ]
        self.client.rpc("upsert_synced_contacts", {
            "p_user_id": user_id,
            "p_rows": rows,
            "p_full_sync": full_sync,
        }).execute()
        logger.info(
            f"Upserted {len(rows)} contact(s) for user {user_id} "
            f"({'full' if full_sync else 'incremental'} sync)"
        )

    # =========================================================================
    # Automations
    # =========================================================================

    async def save_automation(self, automation: Automation) -> None:
        await self._ensure_connection()
        self.client.table("automations").upsert({
            "id": automation.id,
            "user_id": automation.user_id,
            "title": automation.title,
            "trigger_word": automation.trigger_word,
            "trigger_scope": automation.trigger_scope.value if automation.trigger_scope else None,
            "response_type": automation.response_type.value if automation.response_type else "",
            "response_content": automation.response_content,
            "is_active": automation.is_active,
            "expires_at": to_iso(automation.expires_at),
            "comment_reply_text": automation.comment_reply_text,
            "hrn_enforced": automation.hrn_enforced,
            "created_at": to_iso(automation.created_at or utcnow()),
        }).execute()

    async def get_active_automations(self, user_id: str, now: datetime) -> list[Automation]:
        """Active, unexpired automations in creation order."""
        await self._ensure_connection()
        result = self.client.table("automations").select(
            "*"
        ).eq(
            "user_id", user_id
        ).eq(
            "is_active", True
        ).or_(
            f"expires_at.is.null,expires_at.gt.{to_iso(now)}"
        ).order("created_at").execute()
        return [Automation.from_row(row) for row in result.data or []]

    # =========================================================================
    # Action Logs & Dedup
    # =========================================================================

    async def claim_webhook_message(self, user_id: str, webhook_mid: str) -> bool:
        """
        Record a provider message id as handled.

        Returns:
            True if this call claimed the id, False if it was already claimed.
        """
        await self._ensure_connection()
        result = self.client.table("webhook_receipts").upsert(
            {"user_id": user_id, "webhook_mid": webhook_mid},
            on_conflict="user_id,webhook_mid",
            ignore_duplicates=True,
        ).execute()
        return bool(result.data)

    async def has_recent_action(self, user_id: str, thread_id: str, since: datetime) -> bool:
        await self._ensure_connection()
        result = self.client.table("action_logs").select(
            "id", count="exact"
        ).eq(
            "user_id", user_id
        ).eq(
            "thread_id", thread_id
        ).gt(
            "created_at", to_iso(since)
        ).limit(1).execute()
        return (result.count or 0) > 0

    async def add_action_log(
        self,
        user_id: str,
        thread_id: str,
        recipient_id: str,
        action: str,
        text: str,
        result: str,
        message_id: Optional[str] = None,
        webhook_mid: Optional[str] = None,
        retry_of: Optional[str] = None,
        platform: str = "instagram",
    ) -> str:
        await self._ensure_connection()
        response = self.client.table("action_logs").insert({
            "user_id": user_id,
            "platform": platform,
            "thread_id": thread_id,
            "recipient_id": recipient_id,
            "action": action,
            "text": text,
            "result": result,
            "message_id": message_id,
            "webhook_mid": webhook_mid,
            "retry_of": retry_of,
        }).execute()
        return response.data[0]["id"]

    async def get_action_logs(self, user_id: str) -> list[dict]:
        await self._ensure_connection()
        result = self.client.table("action_logs").select(
            "*"
        ).eq("user_id", user_id).order("created_at").execute()
        return result.data or []

    async def add_automation_action_log(
        self,
        user_id: str,
        thread_id: str,
        recipient_id: str,
        automation_id: str,
        trigger_word: str,
        action: str,
        text: Optional[str] = None,
        message_id: Optional[str] = None,
        platform: str = "instagram",
    ) -> str:
        await self._ensure_connection()
        response = self.client.table("automation_action_logs").insert({
            "user_id": user_id,
            "platform": platform,
            "thread_id": thread_id,
            "recipient_id": recipient_id,
            "automation_id": automation_id,
            "trigger_word": trigger_word,
            "action": action,
            "text": text,
            "message_id": message_id,
        }).execute()
        return response.data[0]["id"]

    async def get_automation_action_logs(self, user_id: str) -> list[dict]:
        await self._ensure_connection()
        result = self.client.table("automation_action_logs").select(
            "*"
        ).eq("user_id", user_id).order("created_at").execute()
        return result.data or []

    # =========================================================================
    # Dead Letter Queue (failed sends outbox)
    # =========================================================================

    async def add_to_dead_letter_queue(
        self,
        user_id: str,
        integration_id: str,
        ig_user_id: str,
        recipient_id: str,
        thread_id: str,
        text: str,
        action_log_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> str:
        """
        Queue a failed DM for out-of-band retry.

        Returns:
            ID of the dead letter queue entry.
        """
        try:
            await self._ensure_connection()
            result = self.client.table("failed_sends").insert({
                "user_id": user_id,
                "integration_id": integration_id,
                "ig_user_id": ig_user_id,
                "recipient_id": recipient_id,
                "thread_id": thread_id,
                "text": text,
                "action_log_id": action_log_id,
                "error": error,
                "retry_count": 0,
                "status": "pending",
            }).execute()

            dlq_id = result.data[0]["id"]
            logger.info(f"Added to dead letter queue: {dlq_id}")
            return dlq_id

        except Exception as e:
            logger.error(f"Failed to add to dead letter queue: {e}")
            raise

    async def get_dead_letter_items(
        self,
        max_items: int = 10,
        max_retry_count: int = 5,
    ) -> list[dict]:
        """
        Get items from dead letter queue ready for retry.

        Args:
            max_items: Maximum number of items to retrieve.
            max_retry_count: Skip items that exceeded this retry count.
        """
        try:
            await self._ensure_connection()
            result = self.client.table("failed_sends").select(
                "*"
            ).eq(
                "status", "pending"
            ).lt(
                "retry_count", max_retry_count
            ).order(
                "created_at"
            ).limit(max_items).execute()
            return result.data or []

        except Exception as e:
            logger.error(f"Failed to get dead letter items: {e}")
            return []

    async def retry_dead_letter_item(
        self,
        item_id: str,
        success: bool,
        error: Optional[str] = None,
        max_retries: int = 5,
    ) -> str:
        """
        Update dead letter queue item after retry attempt.

        Returns:
            The item's new status: retried_successfully, pending or exhausted.
        """
        await self._ensure_connection()
        now = to_iso(utcnow())

        if success:
            self.client.table("failed_sends").update({
                "status": "retried_successfully",
                "last_retry_at": now,
            }).eq("id", item_id).execute()
            return "retried_successfully"

        item = self.client.table("failed_sends").select("retry_count").eq("id", item_id).execute()
        if not item.data:
            return "missing"

        new_count = item.data[0]["retry_count"] + 1
        status = "exhausted" if new_count >= max_retries else "pending"
        self.client.table("failed_sends").update({
            "retry_count": new_count,
            "last_retry_at": now,
            "error": error or "Retry failed",
            "status": status,
        }).eq("id", item_id).execute()
        return status

    async def suppress_dead_letter_item(self, item_id: str, reason: str) -> str:
        """Close an item without sending it."""
        await self._ensure_connection()
        self.client.table("failed_sends").update({
            "status": "suppressed_hrn",
            "last_retry_at": to_iso(utcnow()),
            "error": reason,
        }).eq("id", item_id).execute()
        return "suppressed_hrn"

    async def get_dead_letter_stats(self) -> dict:
        """Counts of pending and exhausted dead letter items."""
        try:
            await self._ensure_connection()

            pending = self.client.table("failed_sends").select(
                "id", count="exact"
            ).eq("status", "pending").execute()

            exhausted = self.client.table("failed_sends").select(
                "id", count="exact"
            ).eq("status", "exhausted").execute()

            return {
                "pending": pending.count or 0,
                "exhausted": exhausted.count or 0,
                "total": (pending.count or 0) + (exhausted.count or 0),
            }

        except Exception as e:
            logger.error(f"Failed to get dead letter stats: {e}")
            return {"pending": 0, "exhausted": 0, "total": 0}

    # =========================================================================
    # Personalization (written by the dashboard)
    # =========================================================================

    async def _single(self, table: str, user_id: str) -> Optional[dict]:
        await self._ensure_connection()
        result = self.client.table(table).select("*").eq("user_id", user_id).limit(1).execute()
        return result.data[0] if result.data else None

    async def _ordered(self, table: str, user_id: str) -> list[dict]:
        await self._ensure_connection()
        result = self.client.table(table).select(
            "*"
        ).eq("user_id", user_id).order("created_at").execute()
        return result.data or []

    async def save_business_profile(
        self,
        user_id: str,
        name: Optional[str] = None,
        business_type: Optional[str] = None,
        main_offering: Optional[str] = None,
        use_cases: Optional[list[str]] = None,
        pilot_goals: Optional[list[str]] = None,
        leads_per_month: Optional[str] = None,
    ) -> None:
        await self._ensure_connection()
        self.client.table("business_profiles").upsert({
            "user_id": user_id,
            "name": name,
            "business_type": business_type,
            "main_offering": main_offering,
            "use_cases": use_cases,
            "pilot_goals": pilot_goals,
            "leads_per_month": leads_per_month,
        }).execute()

    async def get_business_profile(self, user_id: str) -> Optional[dict]:
        return await self._single("business_profiles", user_id)

    async def save_tone_profile(self, user_id: str, tone_type: str) -> None:
        await self._ensure_connection()
        self.client.table("tone_profiles").upsert(
            {"user_id": user_id, "tone_type": tone_type}
        ).execute()

    async def get_tone_profile(self, user_id: str) -> Optional[dict]:
        return await self._single("tone_profiles", user_id)

    async def add_offer(self, user_id: str, name: str, content: str) -> str:
        await self._ensure_connection()
        result = self.client.table("offers").insert(
            {"user_id": user_id, "name": name, "content": content}
        ).execute()
        return result.data[0]["id"]

    async def get_offers(self, user_id: str) -> list[dict]:
        return await self._ordered("offers", user_id)

    async def add_faq(self, user_id: str, question: str, answer: str) -> str:
        await self._ensure_connection()
        result = self.client.table("faqs").insert(
            {"user_id": user_id, "question": question, "answer": answer}
        ).execute()
        return result.data[0]["id"]

    async def get_faqs(self, user_id: str) -> list[dict]:
        return await self._ordered("faqs", user_id)

    async def save_sidekick_settings(self, user_id: str, system_prompt: Optional[str]) -> None:
        await self._ensure_connection()
        self.client.table("sidekick_settings").upsert(
            {"user_id": user_id, "system_prompt": system_prompt}
        ).execute()

    async def get_sidekick_settings(self, user_id: str) -> Optional[dict]:
        return await self._single("sidekick_settings", user_id)
