"""
SQLite Database - Local fallback for Supabase.

Same API as the Supabase `Database` class. Used for local development, as a
fallback when Supabase is not configured, and on `:memory:` as the store
behind the processor/sync/worker tests.

Timestamps are stored as ISO-8601 UTC strings. Every multi-column write
that must not race (contact upserts, webhook message claims) is a single
INSERT ... ON CONFLICT statement.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from dm_pilot.models import Automation, Contact, Integration
from dm_pilot.token_cipher import TokenCipher
from dm_pilot.utils import to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("dm_pilot.db")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS integrations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE,
    instagram_user_id TEXT NOT NULL UNIQUE,
    username TEXT,
    access_token TEXT NOT NULL,
    expires_at TEXT,
    last_synced_at TEXT,
    sync_interval_hours INTEGER,
    needs_reconnect INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS contacts (
    user_id TEXT NOT NULL,
    id TEXT NOT NULL,
    username TEXT,
    last_message TEXT,
    last_message_at TEXT,
    stage TEXT NOT NULL DEFAULT 'new',
    sentiment TEXT NOT NULL DEFAULT 'neutral',
    lead_score INTEGER NOT NULL DEFAULT 0,
    lead_value REAL NOT NULL DEFAULT 0,
    next_action TEXT,
    notes TEXT,
    trigger_matched INTEGER NOT NULL DEFAULT 0,
    followup_needed INTEGER NOT NULL DEFAULT 0,
    requires_human_response INTEGER NOT NULL DEFAULT 0,
    human_response_set_at TEXT,
    created_at TEXT,
    updated_at TEXT,
    PRIMARY KEY (user_id, id)
);

CREATE TABLE IF NOT EXISTS automations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    trigger_word TEXT NOT NULL,
    trigger_scope TEXT,
    response_type TEXT NOT NULL,
    response_content TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    expires_at TEXT,
    comment_reply_text TEXT,
    hrn_enforced INTEGER NOT NULL DEFAULT 0,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS action_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    action TEXT NOT NULL,
    text TEXT,
    result TEXT NOT NULL,
    message_id TEXT,
    webhook_mid TEXT,
    retry_of TEXT,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_action_logs_webhook_mid
    ON action_logs(user_id, webhook_mid) WHERE webhook_mid IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_action_logs_thread
    ON action_logs(user_id, thread_id, created_at);

CREATE TABLE IF NOT EXISTS webhook_receipts (
    user_id TEXT NOT NULL,
    webhook_mid TEXT NOT NULL,
    received_at TEXT NOT NULL,
    PRIMARY KEY (user_id, webhook_mid)
);

CREATE TABLE IF NOT EXISTS automation_action_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    automation_id TEXT NOT NULL,
    trigger_word TEXT,
    action TEXT NOT NULL,
    text TEXT,
    message_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS failed_sends (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    integration_id TEXT NOT NULL,
    ig_user_id TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    text TEXT NOT NULL,
    action_log_id TEXT,
    error TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    last_retry_at TEXT
);

CREATE TABLE IF NOT EXISTS business_profiles (
    user_id TEXT PRIMARY KEY,
    name TEXT,
    business_type TEXT,
    main_offering TEXT,
    use_cases TEXT,
    pilot_goals TEXT,
    leads_per_month TEXT
);

CREATE TABLE IF NOT EXISTS tone_profiles (
    user_id TEXT PRIMARY KEY,
    tone_type TEXT
);

CREATE TABLE IF NOT EXISTS offers (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS faqs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    question TEXT NOT NULL,
    answer TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS sidekick_settings (
    user_id TEXT PRIMARY KEY,
    system_prompt TEXT
);
"""

_CONTACT_COLUMNS = (
    "user_id", "id", "username", "last_message", "last_message_at", "stage",
    "sentiment", "lead_score", "lead_value", "next_action", "followup_needed",
    "created_at", "updated_at",
)

_FULL_SYNC_UPDATE = """
    username = excluded.username,
    last_message = excluded.last_message,
    last_message_at = excluded.last_message_at,
    stage = excluded.stage,
    sentiment = excluded.sentiment,
    lead_score = excluded.lead_score,
    next_action = excluded.next_action,
    lead_value = excluded.lead_value,
    followup_needed = excluded.followup_needed,
    updated_at = excluded.updated_at
"""

_INCREMENTAL_SYNC_UPDATE = """
    last_message = excluded.last_message,
    last_message_at = excluded.last_message_at,
    followup_needed = excluded.followup_needed,
    updated_at = excluded.updated_at
"""


def _new_id() -> str:
    return str(uuid.uuid4())


def _json_list(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


class SQLiteDatabase:
    """
    SQLite implementation of the store interface.

    Provides the same API as the Supabase Database class for seamless fallback.
    """

    def __init__(
        self,
        db_path: Union[Path, str] = DEFAULT_DB_PATH,
        cipher: Optional[TokenCipher] = None,
    ) -> None:
        self.db_path = db_path
        self.cipher = cipher
        self.conn: Optional[sqlite3.Connection] = None
        self._is_connected = False

        self._connect()
        self._create_tables()
        logger.info(f"SQLite database initialized: {db_path}")

    def _connect(self) -> None:
        try:
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._is_connected = True
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to SQLite: {e}")
            self._is_connected = False
            raise

    def _create_tables(self) -> None:
        with self.conn:
            self.conn.executescript(_SCHEMA)
        logger.debug("SQLite tables created/verified")

    async def _ensure_connection(self) -> None:
        if not self._is_connected or self.conn is None:
            self._connect()

    def _fetchone(self, sql: str, params: Iterable = ()) -> Optional[dict]:
        row = self.conn.execute(sql, tuple(params)).fetchone()
        return dict(row) if row else None

    def _fetchall(self, sql: str, params: Iterable = ()) -> list[dict]:
        return [dict(row) for row in self.conn.execute(sql, tuple(params)).fetchall()]

    async def health_check(self) -> bool:
        try:
            await self._ensure_connection()
            self.conn.execute("SELECT 1")
            return True
        except sqlite3.Error as e:
            logger.error(f"SQLite health check failed: {e}")
            return False

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            self._is_connected = False

    # =========================================================================
    # Integrations
    # =========================================================================

    def _encrypt(self, token: str) -> str:
        return self.cipher.encrypt(token) if self.cipher else token

    def _to_integration(self, row: Optional[dict]) -> Optional[Integration]:
        if row is None:
            return None
        token = row["access_token"]
        if self.cipher and token:
            token = self.cipher.decrypt(token)
        return Integration.from_row(row, access_token=token)

    async def save_integration(self, integration: Integration) -> None:
        """Insert or replace an integration (written by the account connect flow)."""
        await self._ensure_connection()
        now = to_iso(utcnow())
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO integrations (
                    id, user_id, instagram_user_id, username, access_token,
                    expires_at, last_synced_at, sync_interval_hours,
                    needs_reconnect, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    instagram_user_id = excluded.instagram_user_id,
                    username = excluded.username,
                    access_token = excluded.access_token,
                    expires_at = excluded.expires_at,
                    last_synced_at = excluded.last_synced_at,
                    sync_interval_hours = excluded.sync_interval_hours,
                    needs_reconnect = excluded.needs_reconnect,
                    updated_at = excluded.updated_at
                """,
                (
                    integration.id,
                    integration.user_id,
                    integration.instagram_user_id,
                    integration.username,
                    self._encrypt(integration.access_token),
                    to_iso(integration.expires_at),
                    to_iso(integration.last_synced_at),
                    integration.sync_interval_hours,
                    int(integration.needs_reconnect),
                    now,
                    now,
                ),
            )

    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        await self._ensure_connection()
        return self._to_integration(
            self._fetchone("SELECT * FROM integrations WHERE id = ?", (integration_id,))
        )

    async def get_integration_by_account(self, instagram_user_id: str) -> Optional[Integration]:
        await self._ensure_connection()
        return self._to_integration(
            self._fetchone(
                "SELECT * FROM integrations WHERE instagram_user_id = ?", (instagram_user_id,)
            )
        )

    async def get_integration_for_user(self, user_id: str) -> Optional[Integration]:
        await self._ensure_connection()
        return self._to_integration(
            self._fetchone("SELECT * FROM integrations WHERE user_id = ?", (user_id,))
        )

    async def list_integrations(self) -> list[Integration]:
        await self._ensure_connection()
        rows = self._fetchall("SELECT * FROM integrations ORDER BY created_at")
        return [self._to_integration(row) for row in rows]

    async def get_expiring_integrations(self, before: datetime) -> list[Integration]:
        """Integrations whose token expires before `before`."""
        await self._ensure_connection()
        rows = self._fetchall(
            "SELECT * FROM integrations WHERE expires_at IS NOT NULL AND expires_at < ? "
            "ORDER BY expires_at",
            (to_iso(before),),
        )
        return [self._to_integration(row) for row in rows]

    async def update_integration_token(
        self,
        integration_id: str,
        access_token: str,
        expires_at: datetime,
    ) -> None:
        """Persist a refreshed token. Clears the reconnect flag."""
        await self._ensure_connection()
        with self.conn:
            self.conn.execute(
                "UPDATE integrations SET access_token = ?, expires_at = ?, "
                "needs_reconnect = 0, updated_at = ? WHERE id = ?",
                (self._encrypt(access_token), to_iso(expires_at), to_iso(utcnow()), integration_id),
            )
        logger.info(f"Stored refreshed token for integration {integration_id}")

    async def mark_integration_synced(self, user_id: str, synced_at: datetime) -> None:
        await self._ensure_connection()
        with self.conn:
            self.conn.execute(
                "UPDATE integrations SET last_synced_at = ?, updated_at = ? WHERE user_id = ?",
                (to_iso(synced_at), to_iso(utcnow()), user_id),
            )

    async def mark_needs_reconnect(self, integration_id: str, needs_reconnect: bool = True) -> None:
        await self._ensure_connection()
        with self.conn:
            self.conn.execute(
                "UPDATE integrations SET needs_reconnect = ?, updated_at = ? WHERE id = ?",
                (int(needs_reconnect), to_iso(utcnow()), integration_id),
            )

    # =========================================================================
    # Contacts
    # =========================================================================

    async def get_contact(self, user_id: str, contact_id: str) -> Optional[Contact]:
        await self._ensure_connection()
        row = self._fetchone(
            "SELECT * FROM contacts WHERE user_id = ? AND id = ?", (user_id, contact_id)
        )
        return Contact.from_row(row) if row else None

    async def get_contacts(self, user_id: str, contact_ids: list[str]) -> dict[str, Contact]:
        await self._ensure_connection()
        if not contact_ids:
            return {}
        placeholders = ",".join("?" for _ in contact_ids)
        rows = self._fetchall(
            f"SELECT * FROM contacts WHERE user_id = ? AND id IN ({placeholders})",
            (user_id, *contact_ids),
        )
        return {row["id"]: Contact.from_row(row) for row in rows}

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
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO contacts (user_id, id, last_message, last_message_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, id) DO UPDATE SET
                    last_message = excluded.last_message,
                    last_message_at = excluded.last_message_at,
                    updated_at = excluded.updated_at
                """,
                (user_id, contact_id, message_text, stamp, stamp, stamp),
            )

    async def flag_human_response(
        self,
        user_id: str,
        contact_id: str,
        message_text: str,
        at: datetime,
    ) -> None:
        """Set the sticky HRN flag, keeping the first `human_response_set_at`."""
        await self._ensure_connection()
        stamp = to_iso(at)
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO contacts (
                    user_id, id, last_message, last_message_at,
                    requires_human_response, human_response_set_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(user_id, id) DO UPDATE SET
                    last_message = excluded.last_message,
                    last_message_at = excluded.last_message_at,
                    requires_human_response = 1,
                    human_response_set_at = COALESCE(contacts.human_response_set_at, excluded.human_response_set_at),
                    updated_at = excluded.updated_at
                """,
                (user_id, contact_id, message_text, stamp, stamp, stamp, stamp),
            )
        logger.info(f"Contact {contact_id} flagged for human response")

    async def clear_human_response(self, user_id: str, contact_id: str) -> bool:
        """Explicit human action: the only path that resets the HRN flag."""
        await self._ensure_connection()
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE contacts SET requires_human_response = 0, human_response_set_at = NULL, "
                "updated_at = ? WHERE user_id = ? AND id = ?",
                (to_iso(utcnow()), user_id, contact_id),
            )
        return cursor.rowcount > 0

    async def upsert_synced_contacts(
        self,
        user_id: str,
        contacts: list[Contact],
        full_sync: bool,
    ) -> None:
        """
        Batch upsert from a sync run.

        Full sync overwrites analysis fields; incremental sync only the last
        message fields and `followup_needed`. Notes, trigger flag, creation
        time and HRN fields are never part of the update set.
        """
        if not contacts:
            return
        await self._ensure_connection()
        now = to_iso(utcnow())
        update_set = _FULL_SYNC_UPDATE if full_sync else _INCREMENTAL_SYNC_UPDATE
        placeholders = ",".join("?" for _ in _CONTACT_COLUMNS)
        sql = (
            f"INSERT INTO contacts ({', '.join(_CONTACT_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(user_id, id) DO UPDATE SET {update_set}"
        )
        rows = [
            (
                user_id,
                contact.id,
                contact.username,
                contact.last_message,
                to_iso(contact.last_message_at),
                contact.stage.value,
                contact.sentiment.value,
                contact.lead_score,
                contact.lead_value,
                contact.next_action,
                int(contact.followup_needed),
                now,
                now,
            )
            for contact in contacts
        ]
        with self.conn:
            self.conn.executemany(sql, rows)
        logger.info(
            f"Upserted {len(rows)} contact(s) for user {user_id} "
            f"({'full' if full_sync else 'incremental'} sync)"
        )

    # =========================================================================
    # Automations
    # =========================================================================

    async def save_automation(self, automation: Automation) -> None:
        await self._ensure_connection()
        with self.conn:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO automations (
                    id, user_id, title, trigger_word, trigger_scope, response_type,
                    response_content, is_active, expires_at, comment_reply_text,
                    hrn_enforced, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    automation.id,
                    automation.user_id,
                    automation.title,
                    automation.trigger_word,
                    automation.trigger_scope.value if automation.trigger_scope else None,
                    automation.response_type.value if automation.response_type else "",
                    automation.response_content,
                    int(automation.is_active),
                    to_iso(automation.expires_at),
                    automation.comment_reply_text,
                    int(automation.hrn_enforced),
                    to_iso(automation.created_at or utcnow()),
                ),
            )

    async def get_active_automations(self, user_id: str, now: datetime) -> list[Automation]:
        """Active, unexpired automations in creation order."""
        await self._ensure_connection()
        rows = self._fetchall(
            "SELECT * FROM automations WHERE user_id = ? AND is_active = 1 "
            "AND (expires_at IS NULL OR expires_at > ?) ORDER BY created_at, id",
            (user_id, to_iso(now)),
        )
        return [Automation.from_row(row) for row in rows]

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
        with self.conn:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO webhook_receipts (user_id, webhook_mid, received_at) "
                "VALUES (?, ?, ?)",
                (user_id, webhook_mid, to_iso(utcnow())),
            )
        return cursor.rowcount == 1

    async def has_recent_action(self, user_id: str, thread_id: str, since: datetime) -> bool:
        await self._ensure_connection()
        row = self._fetchone(
            "SELECT 1 FROM action_logs WHERE user_id = ? AND thread_id = ? "
            "AND created_at > ? LIMIT 1",
            (user_id, thread_id, to_iso(since)),
        )
        return row is not None

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
        log_id = _new_id()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO action_logs (
                    id, user_id, platform, thread_id, recipient_id, action, text,
                    result, message_id, webhook_mid, retry_of, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id, user_id, platform, thread_id, recipient_id, action, text,
                    result, message_id, webhook_mid, retry_of, to_iso(utcnow()),
                ),
            )
        return log_id

    async def get_action_logs(self, user_id: str) -> list[dict]:
        await self._ensure_connection()
        return self._fetchall(
            "SELECT * FROM action_logs WHERE user_id = ? ORDER BY created_at", (user_id,)
        )

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
        log_id = _new_id()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO automation_action_logs (
                    id, user_id, platform, thread_id, recipient_id, automation_id,
                    trigger_word, action, text, message_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id, user_id, platform, thread_id, recipient_id, automation_id,
                    trigger_word, action, text, message_id, to_iso(utcnow()),
                ),
            )
        return log_id

    async def get_automation_action_logs(self, user_id: str) -> list[dict]:
        await self._ensure_connection()
        return self._fetchall(
            "SELECT * FROM automation_action_logs WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        )

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
        """Queue a failed DM for out-of-band retry. No access token is stored."""
        await self._ensure_connection()
        item_id = _new_id()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO failed_sends (
                    id, user_id, integration_id, ig_user_id, recipient_id, thread_id,
                    text, action_log_id, error, retry_count, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 'pending', ?)
                """,
                (
                    item_id, user_id, integration_id, ig_user_id, recipient_id, thread_id,
                    text, action_log_id, error, to_iso(utcnow()),
                ),
            )
        logger.info(f"Added to dead letter queue: {item_id}")
        return item_id

    async def get_dead_letter_items(
        self,
        max_items: int = 10,
        max_retry_count: int = 5,
    ) -> list[dict]:
        await self._ensure_connection()
        return self._fetchall(
            "SELECT * FROM failed_sends WHERE status = 'pending' AND retry_count < ? "
            "ORDER BY created_at LIMIT ?",
            (max_retry_count, max_items),
        )

    async def retry_dead_letter_item(
        self,
        item_id: str,
        success: bool,
        error: Optional[str] = None,
        max_retries: int = 5,
    ) -> str:
        """
        Record a retry attempt.

        Returns:
            The item's new status: retried_successfully, pending or exhausted.
        """
        await self._ensure_connection()
        now = to_iso(utcnow())
        with self.conn:
            if success:
                self.conn.execute(
                    "UPDATE failed_sends SET status = 'retried_successfully', last_retry_at = ? "
                    "WHERE id = ?",
                    (now, item_id),
                )
                return "retried_successfully"

            self.conn.execute(
                """
                UPDATE failed_sends SET
                    retry_count = retry_count + 1,
                    last_retry_at = ?,
                    error = ?,
                    status = CASE WHEN retry_count + 1 >= ? THEN 'exhausted' ELSE 'pending' END
                WHERE id = ?
                """,
                (now, error or "Retry failed", max_retries, item_id),
            )
        row = self._fetchone("SELECT status FROM failed_sends WHERE id = ?", (item_id,))
        return row["status"] if row else "missing"

    async def suppress_dead_letter_item(self, item_id: str, reason: str) -> str:
        """Close an item without sending it."""
        await self._ensure_connection()
        with self.conn:
            self.conn.execute(
                "UPDATE failed_sends SET status = 'suppressed_hrn', last_retry_at = ?, error = ? "
                "WHERE id = ?",
                (to_iso(utcnow()), reason, item_id),
            )
        return "suppressed_hrn"

    async def get_dead_letter_stats(self) -> dict:
        await self._ensure_connection()
        rows = self._fetchall("SELECT status, COUNT(*) AS n FROM failed_sends GROUP BY status")
        counts = {row["status"]: row["n"] for row in rows}
        pending = counts.get("pending", 0)
        exhausted = counts.get("exhausted", 0)
        return {"pending": pending, "exhausted": exhausted, "total": pending + exhausted}

    # =========================================================================
    # Personalization (written by the dashboard)
    # =========================================================================

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
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO business_profiles VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    user_id, name, business_type, main_offering,
                    json.dumps(use_cases) if use_cases is not None else None,
                    json.dumps(pilot_goals) if pilot_goals is not None else None,
                    leads_per_month,
                ),
            )

    async def get_business_profile(self, user_id: str) -> Optional[dict]:
        await self._ensure_connection()
        row = self._fetchone("SELECT * FROM business_profiles WHERE user_id = ?", (user_id,))
        if row:
            row["use_cases"] = _json_list(row.get("use_cases"))
            row["pilot_goals"] = _json_list(row.get("pilot_goals"))
        return row

    async def save_tone_profile(self, user_id: str, tone_type: str) -> None:
        await self._ensure_connection()
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO tone_profiles VALUES (?, ?)", (user_id, tone_type)
            )

    async def get_tone_profile(self, user_id: str) -> Optional[dict]:
        await self._ensure_connection()
        return self._fetchone("SELECT * FROM tone_profiles WHERE user_id = ?", (user_id,))

    async def add_offer(self, user_id: str, name: str, content: str) -> str:
        await self._ensure_connection()
        offer_id = _new_id()
        with self.conn:
            self.conn.execute(
                "INSERT INTO offers VALUES (?, ?, ?, ?, ?)",
                (offer_id, user_id, name, content, to_iso(utcnow())),
            )
        return offer_id

    async def get_offers(self, user_id: str) -> list[dict]:
        await self._ensure_connection()
        return self._fetchall(
            "SELECT * FROM offers WHERE user_id = ? ORDER BY created_at", (user_id,)
        )

    async def add_faq(self, user_id: str, question: str, answer: str) -> str:
        await self._ensure_connection()
        faq_id = _new_id()
        with self.conn:
            self.conn.execute(
                "INSERT INTO faqs VALUES (?, ?, ?, ?, ?)",
                (faq_id, user_id, question, answer, to_iso(utcnow())),
            )
        return faq_id

    async def get_faqs(self, user_id: str) -> list[dict]:
        await self._ensure_connection()
        return self._fetchall(
            "SELECT * FROM faqs WHERE user_id = ? ORDER BY created_at", (user_id,)
        )

    async def save_sidekick_settings(self, user_id: str, system_prompt: Optional[str]) -> None:
        await self._ensure_connection()
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO sidekick_settings VALUES (?, ?)", (user_id, system_prompt)
            )

    async def get_sidekick_settings(self, user_id: str) -> Optional[dict]:
        await self._ensure_connection()
        return self._fetchone("SELECT * FROM sidekick_settings WHERE user_id = ?", (user_id,))
