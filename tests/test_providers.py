"""Tests for the OpenAI-compatible backend adapter and the backend registry."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from aidispatch.core.config import Settings
from aidispatch.core.exceptions import (
    BackendConfigError,
    BackendRateLimitedError,
    BackendTransientError,
)
from aidispatch.models.request import ChatMessage, DispatchOptions
from aidispatch.providers.openai import OpenAICompatibleBackend, classify_status_error
from aidispatch.providers.registry import BackendRegistry

REQUEST = httpx.Request("POST", "https://dashscope.example.com/v1/chat/completions")
MESSAGES = [ChatMessage(role="user", content="hello")]


def _status_error(status: int, headers=None) -> openai.APIStatusError:
    response = httpx.Response(status, request=REQUEST, headers=headers or {})
    return openai.APIStatusError(f"status {status}", response=response, body=None)


def _completion(text: str):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=8, total_tokens=20),
    )


@pytest.fixture
def backend():
    b = OpenAICompatibleBackend(api_key="test-key", base_url="https://dashscope.example.com/v1", provider_name="dashscope")
    b.client = MagicMock()
    b.client.chat.completions.create = AsyncMock(return_value=_completion('{"finding": "ok"}'))
    return b


class TestStatusClassification:
    def test_429_is_rate_limited_with_retry_after(self):
        error = classify_status_error(_status_error(429, {"retry-after": "3"}), "qwen-plus")
        assert isinstance(error, BackendRateLimitedError)
        assert error.retry_after == 3.0
        assert error.error_code == "rate_limited"

    @pytest.mark.parametrize("status", [401, 403, 404])
    def test_auth_and_missing_model_are_config_errors(self, status):
        error = classify_status_error(_status_error(status), "qwen-plus")
        assert isinstance(error, BackendConfigError)
        assert error.error_code == "config_missing"

    @pytest.mark.parametrize("status", [400, 500, 502, 503])
    def test_other_statuses_are_transient(self, status):
        error = classify_status_error(_status_error(status), "qwen-plus")
        assert isinstance(error, BackendTransientError)
        assert error.original_status == status


class TestComplete:
    @pytest.mark.asyncio
    async def test_reply_and_usage(self, backend, registry):
        reply = await backend.complete(registry.get("qwen-plus"), MESSAGES, DispatchOptions())
        assert reply.text == '{"finding": "ok"}'
        assert reply.total_tokens == 20

        kwargs = backend.client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "qwen-plus"
        assert kwargs["messages"] == [{"role": "user", "content": "hello"}]
        assert kwargs["max_tokens"] == 32000
        assert kwargs["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_options_override_defaults(self, backend, registry):
        await backend.complete(
            registry.get("qwen-turbo"), MESSAGES, DispatchOptions(temperature=0.1, max_tokens=256)
        )
        kwargs = backend.client.chat.completions.create.await_args.kwargs
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 256

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_typed_error(self, backend, registry):
        backend.client.chat.completions.create.side_effect = _status_error(429)
        with pytest.raises(BackendRateLimitedError):
            await backend.complete(registry.get("qwen-plus"), MESSAGES, DispatchOptions())

    @pytest.mark.asyncio
    async def test_timeout_maps_to_transient(self, backend, registry):
        backend.client.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)
        with pytest.raises(BackendTransientError):
            await backend.complete(registry.get("qwen-plus"), MESSAGES, DispatchOptions())

    @pytest.mark.asyncio
    async def test_empty_choices_is_transient(self, backend, registry):
        backend.client.chat.completions.create.return_value = SimpleNamespace(choices=[], usage=None)
        with pytest.raises(BackendTransientError):
            await backend.complete(registry.get("qwen-plus"), MESSAGES, DispatchOptions())


class TestBackendRegistry:
    def test_from_settings_registers_configured_providers(self):
        registry = BackendRegistry.from_settings(Settings(qwen_api_key="q", openai_api_key=""))
        assert registry.available_providers() == ["dashscope"]
        assert registry.get("openai") is None

    @pytest.mark.asyncio
    async def test_health_check_all(self):
        healthy = MagicMock()
        healthy.health_check = AsyncMock(return_value=True)
        broken = MagicMock()
        broken.health_check = AsyncMock(side_effect=ConnectionError("down"))
        registry = BackendRegistry({"a": healthy, "b": broken})
        assert await registry.health_check_all() == {"a": True, "b": False}
