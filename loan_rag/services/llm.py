# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable Generation Backend
# =============================================================================
#
# Provides a common interface for LLM completions, with concrete
# implementations for Anthropic (Claude) and OpenAI-compatible APIs
# (OpenAI, Azure OpenAI, DeepSeek, Qwen, ...).
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Matches the RecordStore and SearchIndex patterns. Any class with the
# right `complete()` method works, which is how tests inject fakes.
#
# DESIGN DECISION: Native SDKs over LangChain wrappers.
# Using the anthropic and openai SDKs directly gives direct control over
# timeouts and retries and keeps the exception classes visible, so they
# can be classified precisely.
#
# DESIGN DECISION: The pipeline owns retries, not the SDK.
# Both SDKs retry on their own by default. Their clients are built with
# max_retries=0 and complete_with_retry() applies one policy for every
# provider:
#   - hard per-attempt timeout (asyncio.wait_for)
#   - retry only transient kinds (timeout, rate_limit, network)
#   - linear backoff: attempt * unit seconds
#   - auth failures are never retried
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider — any OpenAI-compatible API
#   ├── classify_llm_error()     — SDK exception → GenerationError
#   ├── complete_with_retry()    — timeout + bounded retry wrapper
#   ├── build_llm_provider()     — provider for an explicit Settings object
#   └── get_llm_provider()       — singleton factory, reads from config
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import anthropic
import openai

from loan_rag.config import Settings, settings
from loan_rag.exceptions import GenerationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "gpt-4o")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Implementations raise GenerationError (never raw SDK exceptions) so the
    caller sees one classified failure type.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system", use the system param).
            system: System prompt. Handled differently per provider:
                - Anthropic: top-level `system=` kwarg
                - OpenAI: prepended as {"role": "system", ...} message
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).

        Returns:
            LLMResponse with generated text and usage metrics.
        """
        ...


# ---------------------------------------------------------------------------
# Error Classification
# ---------------------------------------------------------------------------

# Order matters: APITimeoutError subclasses APIConnectionError in both SDKs.
_AUTH_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
)
_TIMEOUT_ERRORS = (
    openai.APITimeoutError,
    anthropic.APITimeoutError,
    asyncio.TimeoutError,
)
_RATE_LIMIT_ERRORS = (openai.RateLimitError, anthropic.RateLimitError)
_NETWORK_ERRORS = (
    openai.APIConnectionError,
    anthropic.APIConnectionError,
    ConnectionError,
)


def classify_llm_error(exc: BaseException) -> GenerationError:
    """Translate an SDK or transport exception into a GenerationError."""
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, _AUTH_ERRORS):
        kind = "auth"
    elif isinstance(exc, _TIMEOUT_ERRORS):
        kind = "timeout"
    elif isinstance(exc, _RATE_LIMIT_ERRORS):
        kind = "rate_limit"
    elif isinstance(exc, _NETWORK_ERRORS):
        kind = "network"
    else:
        kind = "other"
    return GenerationError(kind, f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system". This is the
    opposite of OpenAI's pattern and a common source of bugs.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = anthropic.AsyncAnthropic(
            api_key=resolved_key,
            timeout=timeout or settings.llm_timeout_seconds,
            max_retries=0,
        )
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature if temperature is None else temperature
        self._max_tokens = max_tokens or settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }

        # Anthropic: system prompt is a top-level kwarg, not a message
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            raise classify_llm_error(e) from e

        # Extract text from the first content block
        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY or OPENAI_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "timeout": timeout or settings.llm_timeout_seconds,
            "max_retries": 0,
        }
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature if temperature is None else temperature
        self._max_tokens = max_tokens or settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=all_messages,
                max_tokens=max_tokens or self._max_tokens,
                temperature=self._temperature if temperature is None else temperature,
            )
        except openai.OpenAIError as e:
            raise classify_llm_error(e) from e

        content = response.choices[0].message.content or ""

        # Token counts: OpenAI uses different field names than Anthropic
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Timeout + Retry Wrapper
# ---------------------------------------------------------------------------


async def complete_with_retry(
    llm: LLMProvider,
    messages: list[dict[str, str]],
    system: str | None = None,
    *,
    timeout: float | None = None,
    max_retries: int | None = None,
    backoff_seconds: float | None = None,
    max_tokens: int | None = None,
    temperature: float | None = None,
) -> LLMResponse:
    """
    Call `llm.complete()` with a hard timeout and bounded retries.

    Each attempt is cancelled after `timeout` seconds. Only retryable
    GenerationError kinds are retried, sleeping attempt * backoff_seconds
    between attempts. The last error is re-raised as a GenerationError.
    """
    timeout = settings.llm_timeout_seconds if timeout is None else timeout
    max_retries = settings.llm_max_retries if max_retries is None else max_retries
    backoff_seconds = (
        settings.llm_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    )

    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(
                llm.complete(
                    messages,
                    system=system,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
                timeout=timeout,
            )
        except Exception as e:  # noqa: BLE001 - every failure is classified
            error = classify_llm_error(e)
            if not error.retryable or attempt >= max_retries:
                if error is e:
                    raise
                raise error from e

        attempt += 1
        delay = attempt * backoff_seconds
        logger.warning(
            "LLM call failed (%s), retry %d/%d in %.1fs",
            error.kind, attempt, max_retries, delay,
        )
        await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton — avoid re-creating client on every request
_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def build_llm_provider(config: Settings) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build a provider from an explicit Settings object.

    Only `config` is consulted: a key missing there is not filled in from
    the process-wide settings.

    Raises:
        ValueError: If `config` has no API key for the selected provider.
    """
    if config.llm_provider == "anthropic":
        api_key = config.llm_api_key or config.anthropic_api_key
        if not api_key:
            raise ValueError("No Anthropic API key configured")
        return AnthropicProvider(
            api_key=api_key,
            model=config.llm_model,
            timeout=config.llm_timeout_seconds,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
        )

    api_key = config.llm_api_key or config.openai_api_key
    if not api_key:
        raise ValueError("No API key configured for OpenAI-compatible provider")
    return OpenAICompatibleProvider(
        api_key=api_key,
        model=config.llm_model,
        base_url=config.llm_base_url,
        timeout=config.llm_timeout_seconds,
        temperature=config.llm_temperature,
        max_tokens=config.llm_max_tokens,
    )


def get_llm_provider(
    config: Settings | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Factory that returns the configured LLM provider.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider

    With no `config` the process-wide singleton is returned. An explicit
    `config` gets its own provider and leaves the singleton alone.

    Raises:
        ValueError: If no API key is configured for the selected provider.
    """
    if config is not None:
        return build_llm_provider(config)

    global _provider
    if _provider is None:
        if settings.llm_provider == "anthropic":
            _provider = AnthropicProvider()
        else:
            _provider = OpenAICompatibleProvider()
    return _provider
