"""OpenRouter chat client used by the LLM-backed tiers and reviewers.

Talks to OpenRouter's OpenAI-compatible endpoint over httpx. Rate limits,
server errors and network failures are retried with exponential backoff;
authentication and unknown-model errors fail immediately.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ladder.core.config import LLMConfig
from ladder.core.exceptions import (
    AuthenticationError,
    LLMError,
    ModelNotFoundError,
    RateLimitError,
)

logger = logging.getLogger("ladder.llm.client")


@dataclass
class LLMMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class LLMResponse:
    content: str
    model: str
    tokens_used: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


class OpenRouterClient:
    """Synchronous client; one instance may be shared across worker threads.

    Model ids always come from config/models.yaml through ModelRouter.
    """

    def __init__(self, config: Optional[LLMConfig] = None, api_key: Optional[str] = None):
        self.config = config or LLMConfig()
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY", "")
        self.base_url = self.config.base_url.rstrip("/")
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self.config.timeout_seconds))
        return self._client

    def complete(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Send one chat completion request.

        Raises:
            AuthenticationError: If no API key is set or the key is rejected.
            ModelNotFoundError: If OpenRouter does not know ``model``.
            LLMError: If every retry failed.
        """
        if not self.api_key:
            raise AuthenticationError("OPENROUTER_API_KEY not set")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature if temperature is not None else self.config.default_temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "Ladder",
        }
        return self._request_with_retry(
            payload,
            headers,
            max_retries=self.config.provider_retries + 1,
            backoff_base_seconds=self.config.provider_backoff_seconds,
        )

    def complete_with_fallback(
        self,
        messages: list[LLMMessage],
        models: list[str],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Try each model of the chain in order; the first success wins."""
        chain = [m for i, m in enumerate(models) if m and m not in models[:i]]
        if not chain:
            raise LLMError("No models provided for completion")

        failures: list[str] = []
        for model in chain:
            try:
                return self.complete(messages, model, temperature=temperature, max_tokens=max_tokens)
            except AuthenticationError:
                raise
            except LLMError as e:
                failures.append(f"{model}: {e}")
                logger.warning("Model '%s' failed, trying next fallback", model)
        raise LLMError("All models failed.\n" + "\n".join(failures))

    def _request_with_retry(
        self,
        payload: dict[str, Any],
        headers: dict[str, str],
        max_retries: int = 3,
        backoff_base_seconds: float = 2.0,
    ) -> LLMResponse:
        last_error: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                resp = self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)

                if resp.status_code == 401:
                    raise AuthenticationError("Invalid API key")
                if resp.status_code == 404:
                    raise ModelNotFoundError(f"Model not found: {payload.get('model')}")
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = RateLimitError("Rate limited") if resp.status_code == 429 else LLMError(
                        f"Server error {resp.status_code}"
                    )
                    delay = _backoff_delay(attempt, backoff_base_seconds)
                    logger.warning("%s. Waiting %.1fs before retry %d", last_error, delay, attempt + 1)
                    time.sleep(delay)
                    continue

                resp.raise_for_status()
                data = resp.json()
                content = data["choices"][0]["message"]["content"] or ""
                model = data.get("model", payload.get("model", "unknown"))
                tokens = data.get("usage", {}).get("total_tokens", 0)
                logger.debug("LLM response: model=%s tokens=%d", model, tokens)
                return LLMResponse(content=content, model=model, tokens_used=tokens, raw=data)

            except (AuthenticationError, ModelNotFoundError):
                raise
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = e
                delay = _backoff_delay(attempt, backoff_base_seconds)
                logger.warning("Network error: %s. Waiting %.1fs", e, delay)
                time.sleep(delay)
            except (httpx.HTTPStatusError, KeyError, IndexError, ValueError) as e:
                last_error = e
                if attempt == max_retries - 1:
                    break
                delay = _backoff_delay(attempt, backoff_base_seconds)
                logger.warning("Malformed response: %s. Waiting %.1fs", e, delay)
                time.sleep(delay)

        raise LLMError(f"Request failed after {max_retries} attempts: {last_error}")

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


def _backoff_delay(attempt: int, base_seconds: float = 2.0) -> float:
    """Exponential backoff: 2s, 4s, 8s, ... capped at a minute."""
    return min(base_seconds * (2 ** attempt), 60)
