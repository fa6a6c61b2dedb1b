"""
Tests for the generation service client.

This test suite verifies:
- Request shape (model, temperature, bearer auth)
- Model fallback chain
- Circuit breaker short-circuit
- JSON extraction from model answers
"""

import json

import httpx
import pytest

from dm_pilot.ai_client import AIClient, parse_json_response, strip_fences
from dm_pilot.resilience import CircuitBreaker, CircuitState


def _completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class _ModelRouter:
    """Answers per requested model."""

    def __init__(self, answers: dict):
        self.answers = answers
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json={"data": []})
        body = json.loads(request.content)
        self.requests.append({"body": body, "headers": request.headers})
        return self.answers[body["model"]]


def _client(router, fallback_models=None, breaker=None) -> AIClient:
    return AIClient(
        base_url="https://llm.test/v1/",
        api_key="key-123",
        model="primary",
        fallback_models=fallback_models,
        breaker=breaker,
        transport=httpx.MockTransport(router),
    )


class TestComplete:
    """Tests for AIClient.complete."""

    @pytest.mark.asyncio
    async def test_returns_stripped_content(self):
        router = _ModelRouter({"primary": _completion("  Hello there  ")})

        text = await _client(router).complete("sys", "prompt", temperature=0.1, max_tokens=50)

        assert text == "Hello there"
        sent = router.requests[0]
        assert sent["headers"]["Authorization"] == "Bearer key-123"
        assert sent["body"]["model"] == "primary"
        assert sent["body"]["temperature"] == 0.1
        assert sent["body"]["max_tokens"] == 50
        assert sent["body"]["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "prompt"},
        ]

    @pytest.mark.asyncio
    async def test_falls_back_on_server_error(self):
        router = _ModelRouter({
            "primary": httpx.Response(500, json={"error": "down"}),
            "backup": _completion("from backup"),
        })

        text = await _client(router, fallback_models=["backup"]).complete("s", "p")

        assert text == "from backup"
        assert [r["body"]["model"] for r in router.requests] == ["primary", "backup"]

    @pytest.mark.asyncio
    async def test_falls_back_on_empty_content(self):
        router = _ModelRouter({
            "primary": _completion(""),
            "backup": _completion("second"),
        })

        assert await _client(router, fallback_models=["backup"]).complete("s", "p") == "second"

    @pytest.mark.asyncio
    async def test_all_models_fail_returns_none(self):
        router = _ModelRouter({"primary": httpx.Response(400, json={})})
        breaker = CircuitBreaker("test", failure_threshold=5)

        assert await _client(router, breaker=breaker).complete("s", "p") is None
        assert breaker.failures == 1

    @pytest.mark.asyncio
    async def test_malformed_response_returns_none(self):
        router = _ModelRouter({"primary": httpx.Response(200, json={"choices": []})})
        assert await _client(router).complete("s", "p") is None

    @pytest.mark.asyncio
    async def test_open_breaker_skips_request(self):
        router = _ModelRouter({"primary": _completion("never")})
        breaker = CircuitBreaker("test", failure_threshold=1)
        breaker.state = CircuitState.OPEN
        breaker.opened_at = breaker._clock()

        assert await _client(router, breaker=breaker).complete("s", "p") is None
        assert router.requests == []


class TestGenerateAutomationResponse:
    """Tests for ai_prompt automation replies."""

    @pytest.mark.asyncio
    async def test_prompt_and_message_substituted(self):
        router = _ModelRouter({"primary": _completion("<b>Our plans start at $99</b>")})

        reply = await _client(router).generate_automation_response(
            "Explain pricing briefly", "how much?", context="earlier chat"
        )

        assert reply == "bOur plans start at $99/b"
        body = router.requests[0]["body"]
        assert body["temperature"] == 0.4
        assert body["max_tokens"] == 500
        assert "Explain pricing briefly" in body["messages"][1]["content"]
        assert 'User\'s message: "how much?"' in body["messages"][1]["content"]
        assert "Context from conversation:\nearlier chat" in body["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_nothing_generated(self):
        router = _ModelRouter({"primary": httpx.Response(400, json={})})
        assert await _client(router).generate_automation_response("p", "m") is None


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self):
        assert await _client(_ModelRouter({})).health_check() is True

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError("refused")

        client = AIClient("https://llm.test/v1", "k", "m", transport=httpx.MockTransport(refuse))
        assert await client.health_check() is False


class TestJsonHelpers:
    """Tests for fence stripping and JSON extraction."""

    def test_strip_fences(self):
        assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_parse_plain(self):
        assert parse_json_response('{"stage": "lead"}') == {"stage": "lead"}

    def test_parse_embedded(self):
        assert parse_json_response('Result: {"stage": "lead"} done') == {"stage": "lead"}

    def test_parse_rejects_non_objects(self):
        assert parse_json_response("[1, 2]") is None
        assert parse_json_response("nope") is None
        assert parse_json_response(None) is None
