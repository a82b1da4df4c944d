"""
Reasoning backend - chat completions over an OpenAI-compatible endpoint.

The client is created lazily on first call (OpenRouter by default). Transient
status codes are retried on the same model with 1s, 2s back-off; anything else,
or a transient error that outlasts the retries, becomes ReasoningError.
"""

import asyncio
import logging
from typing import Optional

from openai import AsyncOpenAI
from openai import APIStatusError as OpenAIAPIStatusError

from .config import LLMConfig
from .constitution import ModelTier

logger = logging.getLogger("roly.llm")

MAX_RETRIES = 2
TRANSIENT_STATUS_CODES = (429, 500, 502, 503, 529)


class ReasoningError(Exception):
    """The backend gave up. The agent loop treats this as a failed cycle."""
    pass


class ReasoningBackend:

    def __init__(self, config: LLMConfig, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self._client = client
        self.calls = 0
        self.failures = 0

    @property
    def primary_model(self) -> str:
        return self.config.model

    @property
    def fallback_model(self) -> str:
        return self.config.fallback_model

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=60.0,  # per call; the SDK default (600s) stalls a whole cycle
            )
        return self._client

    def model_for(self, model_tier: ModelTier) -> str:
        """Frontier tier gets the configured model; poorer tiers drop to the fallback."""
        if model_tier is ModelTier.FRONTIER:
            return self.config.model
        return self.config.fallback_model

    async def complete(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        use_model = model or self.config.model
        client = self._get_client()
        self.calls += 1

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await client.chat.completions.create(
                    model=use_model,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
                if not response.choices:
                    raise ReasoningError(f"{use_model} returned no choices")
                return response.choices[0].message.content or ""

            except OpenAIAPIStatusError as e:
                is_transient = e.status_code in TRANSIENT_STATUS_CODES
                if is_transient and attempt < MAX_RETRIES:
                    wait = 2 ** attempt  # 1s, 2s
                    logger.warning(
                        f"LLM {use_model} returned {e.status_code} "
                        f"(attempt {attempt + 1}/{MAX_RETRIES + 1}), retrying in {wait}s "
                        f"request_id={getattr(e, 'request_id', '?')}"
                    )
                    await asyncio.sleep(wait)
                    continue
                self.failures += 1
                logger.warning(f"LLM call failed on {use_model} [{e.status_code}]: {e.message}")
                raise ReasoningError(f"{use_model} failed with status {e.status_code}") from e

            except ReasoningError:
                self.failures += 1
                raise

            except Exception as e:
                self.failures += 1
                logger.warning(f"LLM call failed on {use_model}: {e}")
                raise ReasoningError(f"{use_model} failed: {e}") from e

        raise ReasoningError(f"{use_model} exhausted retries")

    def get_status(self) -> dict:
        return {
            "model": self.config.model,
            "fallback_model": self.config.fallback_model,
            "base_url": self.config.base_url,
            "calls": self.calls,
            "failures": self.failures,
        }
