"""
Tests for shared helpers and token encryption.
"""

from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet

from dm_pilot.models import Automation, Integration, Scope, SendResult
from dm_pilot.token_cipher import TokenCipher, TokenDecryptionError
from dm_pilot.utils import (
    comment_thread_id,
    dm_thread_id,
    parse_timestamp,
    sanitize_text,
    to_iso,
)


class TestSanitizeText:
    def test_strips_control_chars_and_brackets(self):
        assert sanitize_text("  <script>hi\x00\x07</script>  ") == "scripthi/script"

    def test_none_and_empty(self):
        assert sanitize_text(None) == ""
        assert sanitize_text("") == ""

    def test_newlines_removed(self):
        assert sanitize_text("line1\nline2") == "line1line2"


class TestThreadIds:
    def test_dm_thread(self):
        assert dm_thread_id("ig-biz-1", "cust-1") == "ig-biz-1:cust-1"

    def test_comment_thread(self):
        assert comment_thread_id("ig-biz-1", "c-9") == "ig-biz-1:comment:c-9"


class TestParseTimestamp:
    @pytest.mark.parametrize("raw", [
        "2025-11-26T14:30:00+0000",
        "2025-11-26T14:30:00Z",
        "2025-11-26T14:30:00+00:00",
        "2025-11-26T14:30:00",
        1764167400,
    ])
    def test_formats(self, raw):
        assert parse_timestamp(raw) == datetime(2025, 11, 26, 14, 30, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        parsed = parse_timestamp("2025-11-26T16:30:00+0200")
        assert parsed == datetime(2025, 11, 26, 14, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("raw", [None, "", "yesterday", [1]])
    def test_invalid(self, raw):
        assert parse_timestamp(raw) is None

    def test_to_iso_round_trip(self):
        moment = datetime(2025, 11, 26, 14, 30, tzinfo=timezone.utc)
        assert parse_timestamp(to_iso(moment)) == moment
        assert to_iso(None) is None


class TestModels:
    def test_integration_repr_hides_token(self):
        integration = Integration("i", "u", "ig", "acme", access_token="super-secret")
        assert "super-secret" not in repr(integration)

    def test_automation_from_row_unknown_values(self):
        automation = Automation.from_row({
            "id": 1, "user_id": "u", "trigger_word": "hi",
            "response_type": "carousel", "trigger_scope": "everywhere", "is_active": 1,
        })
        assert automation.response_type is None
        assert automation.trigger_scope is None
        assert automation.effective_scope == Scope.DM

    def test_send_result_ok(self):
        assert SendResult(status=200).ok
        assert not SendResult(status=0).ok


class TestTokenCipher:
    """Tests for access token encryption at rest."""

    def test_round_trip(self):
        cipher = TokenCipher(Fernet.generate_key().decode())
        encrypted = cipher.encrypt("IGQVJ-token")
        assert encrypted != "IGQVJ-token"
        assert cipher.decrypt(encrypted) == "IGQVJ-token"

    def test_wrong_key(self):
        encrypted = TokenCipher(Fernet.generate_key().decode()).encrypt("tok")
        with pytest.raises(TokenDecryptionError):
            TokenCipher(Fernet.generate_key().decode()).decrypt(encrypted)

    def test_invalid_key(self):
        with pytest.raises(ValueError):
            TokenCipher("not-a-key")
