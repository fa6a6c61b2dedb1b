"""
AI Client - OpenAI-compatible chat completions client.

The generation service is treated as an opaque text-completion endpoint with
a system/user prompt contract. Every caller in the pipeline has a safe
default for "no answer", so this client never raises: it returns None when
all models fail or the circuit breaker is open.

Configuration:
    AI_BASE_URL=https://openrouter.ai/api/v1
    AI_API_KEY=sk-or-v1-xxx
    AI_MODEL=google/gemini-2.0-flash-001
    AI_FALLBACK_MODELS=["openai/gpt-4o-mini"]

Usage:
    client = AIClient(base_url=..., api_key=..., model=...)
    text = await client.complete(system="...", prompt="...", temperature=0.4)
"""

import json
import logging
import re
from typing import Any, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config.prompts import AUTOMATION_AI_MAIN, AUTOMATION_AI_SYSTEM
from dm_pilot.resilience import CircuitBreaker, CircuitBreakerError
from dm_pilot.utils import sanitize_text

logger = logging.getLogger(__name__)

AUTOMATION_TEMPERATURE = 0.4
AUTOMATION_MAX_TOKENS = 500

_FENCE_OPEN = re.compile(r"```[a-zA-Z]*\s*")
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def strip_fences(raw: str) -> str:
    """Remove markdown code fences and stray backticks."""
    cleaned = _FENCE_OPEN.sub("", raw)
    return cleaned.replace("`", "").strip()


def parse_json_response(raw: Optional[str]) -> Optional[dict[str, Any]]:
    """
    Parse a JSON object out of a model answer.

    Tries the whole (fence-stripped) answer first, then the outermost
    `{...}` block. Returns None when neither is a JSON object.
    """
    if not raw:
        return None

    cleaned = strip_fences(raw)
    candidates = [cleaned]
    match = _JSON_OBJECT.search(cleaned)
    if match:
        candidates.append(match.group())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    return None


def _is_retryable_error(e: BaseException) -> bool:
    """Connection errors, timeouts and 429s are retried."""
    if isinstance(e, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 429:
        return True
    return False


class AIClient:
    """
    Chat completions client with model fallback and a circuit breaker.

    Each model in the chain gets its own tenacity retry for transient
    errors; the breaker counts a call as failed only when the whole chain
    came back empty.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        fallback_models: list[str] | None = None,
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.fallback_models = fallback_models or []
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(
            "generation_service", failure_threshold=5, recovery_timeout=60
        )
        self._transport = transport

        logger.info(
            f"AI Client initialized: {self.base_url} / {model} "
            f"(Fallbacks: {len(self.fallback_models)})"
        )

    async def complete(
        self,
        system: str,
        prompt: str,
        temperature: float = 0.4,
        max_tokens: int = 1024,
    ) -> Optional[str]:
        """
        Run one system/user completion.

        Returns:
            Stripped completion text, or None when generation failed.
        """
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]

        try:
            return await self.breaker.call(
                self._complete_chain, messages, temperature, max_tokens
            )
        except CircuitBreakerError as e:
            logger.warning(f"Generation skipped: {e}")
        except Exception as e:
            logger.error(f"Generation failed: {e}")
        return None

    async def _complete_chain(
        self,
        messages: list[dict],
        temperature: float,
        max_tokens: int,
    ) -> str:
        chain = [self.model] + self.fallback_models
        last_error: Exception | None = None

        for current_model in chain:
            try:
                content = await self._generate_with_retry(
                    model=current_model,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
                logger.warning(f"Model {current_model} failed: {e}")
                last_error = e
                continue

            if content:
                return content
            logger.warning(f"Model {current_model} returned empty content")

        raise RuntimeError(f"All models failed: {last_error or 'empty responses'}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _generate_with_retry(
        self,
        model: str,
        messages: list,
        max_tokens: int,
        temperature: float,
    ) -> str:
        """
        One chat completion call, retried on transient errors.

        Raises:
            httpx.HTTPError: After retries, or on a non-retryable status.
            KeyError/IndexError/TypeError: On an unexpected response shape.
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                url=f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": model,
                    "messages": messages,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                },
            )
            response.raise_for_status()
            data = response.json()

        content = data["choices"][0]["message"]["content"]
        return (content or "").strip()

    async def generate_automation_response(
        self,
        prompt: str,
        user_message: str,
        context: str | None = None,
    ) -> Optional[str]:
        """
        Answer an inbound message following an `ai_prompt` automation's instructions.

        Returns:
            Sanitized reply text, or None when generation produced nothing.
        """
        system = AUTOMATION_AI_SYSTEM
        if context:
            system = f"{system}\n\nContext from conversation:\n{context}"

        main = AUTOMATION_AI_MAIN.replace("{prompt}", prompt).replace(
            "{userMessage}", user_message
        )

        text = await self.complete(
            system=system,
            prompt=main,
            temperature=AUTOMATION_TEMPERATURE,
            max_tokens=AUTOMATION_MAX_TOKENS,
        )
        reply = sanitize_text(text)
        return reply or None

    async def health_check(self) -> bool:
        """Check that the service answers its model listing."""
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(
                    url=f"{self.base_url}/models",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.error(f"AI health check failed: {e}")
            return False
