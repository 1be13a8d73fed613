# =============================================================================
# Unit Tests — LLM Providers, Error Classification, Retry Policy
# =============================================================================
#
# No API keys and no network: SDK exceptions are built directly and the
# provider clients are replaced with mocks.
# =============================================================================

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import openai
import pytest

from loan_rag.config import Settings
from loan_rag.exceptions import GenerationError
from loan_rag.services import llm
from loan_rag.services.llm import (
    AnthropicProvider,
    LLMResponse,
    OpenAICompatibleProvider,
    classify_llm_error,
    complete_with_retry,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


_REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat")


def _response(status: int) -> httpx.Response:
    return httpx.Response(status, request=_REQUEST)


def _ok(content: str = "ok") -> LLMResponse:
    return LLMResponse(content=content, model="m", input_tokens=1, output_tokens=1)


# ---------------------------------------------------------------------------
# Test: Error Classification
# ---------------------------------------------------------------------------


class TestClassifyLLMError:

    @pytest.mark.parametrize("exc, kind", [
        (openai.AuthenticationError("bad key", response=_response(401), body=None), "auth"),
        (anthropic.AuthenticationError("bad key", response=_response(401), body=None), "auth"),
        (openai.PermissionDeniedError("nope", response=_response(403), body=None), "auth"),
        (openai.RateLimitError("slow down", response=_response(429), body=None), "rate_limit"),
        (anthropic.RateLimitError("slow down", response=_response(429), body=None), "rate_limit"),
        (openai.APITimeoutError(request=_REQUEST), "timeout"),
        (anthropic.APITimeoutError(request=_REQUEST), "timeout"),
        (asyncio.TimeoutError(), "timeout"),
        (openai.APIConnectionError(request=_REQUEST), "network"),
        (anthropic.APIConnectionError(request=_REQUEST), "network"),
        (ConnectionResetError("reset"), "network"),
        (openai.BadRequestError("bad", response=_response(400), body=None), "other"),
        (KeyError("choices"), "other"),
    ])
    def test_kinds(self, exc, kind):
        assert classify_llm_error(exc).kind == kind

    def test_generation_error_passes_through(self):
        original = GenerationError("rate_limit", "x")
        assert classify_llm_error(original) is original

    def test_only_transient_kinds_are_retryable(self):
        assert GenerationError("timeout").retryable
        assert GenerationError("network").retryable
        assert not GenerationError("auth").retryable
        assert not GenerationError("other").retryable

    def test_unknown_kind_becomes_other(self):
        assert GenerationError("weird").kind == "other"


# ---------------------------------------------------------------------------
# Test: Timeout + Retry Wrapper
# ---------------------------------------------------------------------------


class TestCompleteWithRetry:

    def test_success_first_try(self):
        provider = AsyncMock()
        provider.complete.return_value = _ok("hello")
        result = _run(complete_with_retry(
            provider, [{"role": "user", "content": "hi"}], "sys",
            timeout=1.0, max_retries=2, backoff_seconds=0.0, max_tokens=99,
        ))
        assert result.content == "hello"
        call = provider.complete.call_args
        assert call.kwargs["system"] == "sys"
        assert call.kwargs["max_tokens"] == 99

    def test_auth_is_not_retried(self):
        provider = AsyncMock()
        provider.complete.side_effect = openai.AuthenticationError(
            "bad key", response=_response(401), body=None,
        )
        with pytest.raises(GenerationError) as exc_info:
            _run(complete_with_retry(provider, [], timeout=1.0, max_retries=3, backoff_seconds=0.0))
        assert exc_info.value.kind == "auth"
        assert provider.complete.call_count == 1

    def test_rate_limit_retried_until_success(self):
        provider = AsyncMock()
        provider.complete.side_effect = [
            GenerationError("rate_limit"),
            GenerationError("network"),
            _ok("finally"),
        ]
        result = _run(complete_with_retry(provider, [], timeout=1.0, max_retries=2, backoff_seconds=0.0))
        assert result.content == "finally"
        assert provider.complete.call_count == 3

    def test_retries_are_bounded(self):
        provider = AsyncMock()
        provider.complete.side_effect = GenerationError("network", "reset")
        with pytest.raises(GenerationError) as exc_info:
            _run(complete_with_retry(provider, [], timeout=1.0, max_retries=1, backoff_seconds=0.0))
        assert exc_info.value.kind == "network"
        assert provider.complete.call_count == 2

    def test_slow_call_times_out(self):
        class SlowProvider:
            async def complete(self, messages, system=None, temperature=None, max_tokens=None):
                await asyncio.sleep(5)
                return _ok()

        with pytest.raises(GenerationError) as exc_info:
            _run(complete_with_retry(
                SlowProvider(), [], timeout=0.01, max_retries=0, backoff_seconds=0.0,
            ))
        assert exc_info.value.kind == "timeout"

    def test_backoff_grows_linearly(self):
        provider = AsyncMock()
        provider.complete.side_effect = GenerationError("timeout")
        with patch("loan_rag.services.llm.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(GenerationError):
                _run(complete_with_retry(
                    provider, [], timeout=1.0, max_retries=3, backoff_seconds=0.5,
                ))
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0, 1.5]


# ---------------------------------------------------------------------------
# Test: Providers (mocked clients)
# ---------------------------------------------------------------------------


class TestAnthropicProvider:

    def _provider(self) -> AnthropicProvider:
        provider = AnthropicProvider(api_key="sk-test", model="claude-test")
        provider._client = MagicMock()
        provider._client.messages.create = AsyncMock()
        return provider

    def test_system_prompt_is_top_level(self):
        provider = self._provider()
        provider._client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Two loans.")],
            model="claude-test",
            usage=SimpleNamespace(input_tokens=12, output_tokens=3),
        )
        result = _run(provider.complete([{"role": "user", "content": "q"}], system="be brief"))

        kwargs = provider._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "be brief"
        assert kwargs["messages"] == [{"role": "user", "content": "q"}]
        assert result.content == "Two loans."
        assert result.output_tokens == 3

    def test_temperature_override_includes_zero(self):
        provider = self._provider()
        provider._client.messages.create.return_value = SimpleNamespace(
            content=[], model="claude-test",
            usage=SimpleNamespace(input_tokens=1, output_tokens=0),
        )
        _run(provider.complete([], temperature=0.0))
        assert provider._client.messages.create.call_args.kwargs["temperature"] == 0.0

    def test_sdk_error_is_classified(self):
        provider = self._provider()
        provider._client.messages.create.side_effect = anthropic.RateLimitError(
            "slow down", response=_response(429), body=None,
        )
        with pytest.raises(GenerationError) as exc_info:
            _run(provider.complete([]))
        assert exc_info.value.kind == "rate_limit"


class TestOpenAICompatibleProvider:

    def _provider(self) -> OpenAICompatibleProvider:
        provider = OpenAICompatibleProvider(api_key="sk-test", model="gpt-test")
        provider._client = MagicMock()
        provider._client.chat.completions.create = AsyncMock()
        return provider

    def test_system_prompt_is_first_message(self):
        provider = self._provider()
        provider._client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Answer"))],
            model="gpt-test",
            usage=SimpleNamespace(prompt_tokens=20, completion_tokens=4),
        )
        result = _run(provider.complete([{"role": "user", "content": "q"}], system="sys"))

        messages = provider._client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "sys"}
        assert result.input_tokens == 20
        assert result.content == "Answer"

    def test_missing_usage_counts_zero(self):
        provider = self._provider()
        provider._client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=None))],
            model=None,
            usage=None,
        )
        result = _run(provider.complete([]))
        assert result.content == ""
        assert result.model == "gpt-test"
        assert result.input_tokens == 0

    def test_connection_error_is_network(self):
        provider = self._provider()
        provider._client.chat.completions.create.side_effect = openai.APIConnectionError(
            request=_REQUEST,
        )
        with pytest.raises(GenerationError) as exc_info:
            _run(provider.complete([]))
        assert exc_info.value.kind == "network"


# ---------------------------------------------------------------------------
# Test: Factory
# ---------------------------------------------------------------------------


class TestLLMProviderFactory:
    """Tests for the LLM provider factory function."""

    def test_factory_raises_without_api_key(self):
        original = llm._provider
        llm._provider = None
        try:
            with patch.object(llm.settings, "llm_provider", "anthropic"), \
                    patch.object(llm.settings, "llm_api_key", None), \
                    patch.object(llm.settings, "anthropic_api_key", ""):
                with pytest.raises(ValueError, match="API key"):
                    llm.get_llm_provider()
        finally:
            llm._provider = original

    def test_factory_builds_openai_compatible(self):
        original = llm._provider
        llm._provider = None
        try:
            with patch.object(llm.settings, "llm_provider", "openai_compatible"), \
                    patch.object(llm.settings, "llm_api_key", "sk-test"):
                provider = llm.get_llm_provider()
                assert isinstance(provider, OpenAICompatibleProvider)
                assert llm.get_llm_provider() is provider
        finally:
            llm._provider = original

    def test_explicit_config_builds_its_own_provider(self):
        original = llm._provider
        llm._provider = None
        try:
            config = Settings(
                llm_provider="anthropic",
                llm_api_key="sk-cfg",
                llm_model="claude-cfg",
                llm_timeout_seconds=3.0,
                llm_max_tokens=123,
            )
            provider = llm.get_llm_provider(config)
            assert isinstance(provider, AnthropicProvider)
            assert provider._model == "claude-cfg"
            assert provider._max_tokens == 123
            assert provider._client.timeout == 3.0
            assert provider._client.api_key == "sk-cfg"
            assert llm._provider is None
        finally:
            llm._provider = original

    def test_explicit_config_ignores_global_key(self):
        config = Settings(
            llm_provider="openai_compatible",
            llm_api_key="",
            openai_api_key="",
        )
        with patch.object(llm.settings, "llm_api_key", "sk-global"):
            with pytest.raises(ValueError, match="API key"):
                llm.get_llm_provider(config)

    def test_explicit_config_passes_base_url(self):
        config = Settings(
            llm_provider="openai_compatible",
            llm_api_key="sk-cfg",
            llm_base_url="https://llm.example.com/v1",
        )
        provider = llm.get_llm_provider(config)
        assert isinstance(provider, OpenAICompatibleProvider)
        assert str(provider._client.base_url).startswith("https://llm.example.com/v1")
