import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import APIStatusError

from core.config import LLMConfig
from core.constitution import ModelTier
from core.llm import ReasoningBackend, ReasoningError

MESSAGES = [{"role": "user", "content": "hello"}]


def _status_error(code):
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    return APIStatusError(f"HTTP {code}", response=httpx.Response(code, request=request), body=None)


def _reply(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _backend(*outcomes):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(outcomes))
    return ReasoningBackend(LLMConfig(api_key="k", model="big", fallback_model="small"), client), client


class TestReasoningBackend:

    def test_model_for_tier(self):
        backend, _ = _backend()
        assert backend.model_for(ModelTier.FRONTIER) == "big"
        assert backend.model_for(ModelTier.EFFICIENT) == "small"
        assert backend.model_for(ModelTier.MINIMAL) == "small"

    def test_transient_errors_retried(self):
        backend, client = _backend(_status_error(503), _status_error(429), _reply("thought"))

        with patch("core.llm.asyncio.sleep", new=AsyncMock()) as sleep:
            assert asyncio.run(backend.complete(MESSAGES)) == "thought"

        assert client.chat.completions.create.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]
        assert backend.failures == 0

    def test_retries_exhausted(self):
        backend, client = _backend(*[_status_error(502)] * 3)

        with patch("core.llm.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ReasoningError):
                asyncio.run(backend.complete(MESSAGES, model="small"))

        assert client.chat.completions.create.await_count == 3
        assert backend.get_status()["failures"] == 1

    def test_non_transient_fails_fast(self):
        backend, client = _backend(_status_error(401))

        with pytest.raises(ReasoningError, match="status 401"):
            asyncio.run(backend.complete(MESSAGES))

        assert client.chat.completions.create.await_count == 1

    def test_empty_choices(self):
        backend, _ = _backend(SimpleNamespace(choices=[]))
        with pytest.raises(ReasoningError, match="no choices"):
            asyncio.run(backend.complete(MESSAGES))

    def test_none_content_is_empty_text(self):
        backend, client = _backend(_reply(None))
        assert asyncio.run(backend.complete(MESSAGES, max_tokens=500, temperature=0.5)) == ""
        kwargs = client.chat.completions.create.call_args.kwargs
        assert (kwargs["model"], kwargs["max_tokens"], kwargs["temperature"]) == ("big", 500, 0.5)
