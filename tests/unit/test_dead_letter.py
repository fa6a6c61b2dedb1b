"""
Tests for send_with_retry.
"""

import pytest

from dm_pilot.dead_letter import send_with_retry
from dm_pilot.models import ErrorKind, SendResult


class ScriptedSend:
    """Returns the queued results in order and counts calls."""

    def __init__(self, *results: SendResult):
        self.results = list(results)
        self.calls = 0

    async def __call__(self) -> SendResult:
        self.calls += 1
        return self.results.pop(0)


class TestSendWithRetry:
    """Tests for bounded re-send of failed DMs."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, no_sleep):
        send = ScriptedSend(SendResult(200, "m1"))

        result = await send_with_retry(send, sleep=no_sleep)

        assert result.message_id == "m1"
        assert send.calls == 1
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_succeeds_on_second_attempt(self, no_sleep):
        send = ScriptedSend(
            SendResult(500, error_kind=ErrorKind.API_ERROR),
            SendResult(200, "m2"),
        )

        result = await send_with_retry(send, max_attempts=2, base_delay=1.0, sleep=no_sleep)

        assert result.ok
        assert send.calls == 2
        assert no_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_token_expired_not_retried(self, no_sleep):
        send = ScriptedSend(SendResult(401, error_kind=ErrorKind.TOKEN_EXPIRED))

        result = await send_with_retry(send, max_attempts=3, sleep=no_sleep)

        assert result.error_kind == ErrorKind.TOKEN_EXPIRED
        assert send.calls == 1

    @pytest.mark.asyncio
    async def test_retry_after_honoured(self, no_sleep):
        send = ScriptedSend(
            SendResult(429, error_kind=ErrorKind.RATE_LIMITED, retry_after=7),
            SendResult(200, "m3"),
        )

        await send_with_retry(send, max_attempts=2, sleep=no_sleep)

        assert no_sleep.delays == [7]

    @pytest.mark.asyncio
    async def test_exhausted_returns_last_result(self, no_sleep):
        send = ScriptedSend(
            SendResult(500, error_kind=ErrorKind.API_ERROR),
            SendResult(0, error_kind=ErrorKind.NETWORK_ERROR),
            SendResult(503, error_kind=ErrorKind.API_ERROR),
        )

        result = await send_with_retry(send, max_attempts=3, base_delay=0.5, sleep=no_sleep)

        assert result.status == 503
        assert send.calls == 3
        assert no_sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_plain_callable_returning_coroutine(self, no_sleep):
        calls = []

        async def send_message(text: str) -> SendResult:
            calls.append(text)
            return SendResult(200, "m4")

        result = await send_with_retry(lambda: send_message("hi"), sleep=no_sleep)

        assert result.ok
        assert result.message_id == "m4"
        assert calls == ["hi"]
