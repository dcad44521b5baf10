"""LLM provider detection and async client construction.

Scoring and tagging can run against Anthropic's direct API or OpenRouter
(OpenAI-compatible gateway). Embeddings always go to Jina's OpenAI-compatible
endpoint.

Provider detection:
1. If llm.provider is set in the linkweave section of .kbconfig -> use that
2. If only ANTHROPIC_API_KEY set -> use anthropic
3. If only OPENROUTER_API_KEY set -> use openrouter
4. If both keys set and no explicit config -> error
5. If no keys set -> error

SDK-level retries are disabled on every client; errors.with_retry owns the
retry policy.
"""

from __future__ import annotations

import os
from typing import Any

import anthropic
from openai import AsyncOpenAI

from .config import (
    EMBEDDING_TIMEOUT_SECONDS,
    JINA_BASE_URL,
    LLM_TIMEOUT_SECONDS,
    OPENROUTER_BASE_URL,
    LLMConfig,
)
from .errors import ConfigurationError

PROVIDERS = ("anthropic", "openrouter")


# =============================================================================
# Model Name Translation
# =============================================================================

# Canonical model names mapped to (anthropic_name, openrouter_name)
MODEL_ALIASES: dict[str, tuple[str, str]] = {
    "claude-3-haiku": ("claude-3-haiku-20240307", "anthropic/claude-3-haiku"),
    "claude-3.5-haiku": ("claude-3-5-haiku-20241022", "anthropic/claude-3-5-haiku"),
    "claude-haiku-4.5": ("claude-haiku-4-5-20250414", "anthropic/claude-haiku-4.5"),
    "claude-3.5-sonnet": ("claude-3-5-sonnet-20241022", "anthropic/claude-3.5-sonnet"),
    "claude-sonnet-4": ("claude-sonnet-4-20250514", "anthropic/claude-sonnet-4"),
}


def resolve_model(model: str, provider: str) -> str:
    """Resolve a model name to provider-specific format.

    Examples:
        >>> resolve_model("claude-3.5-haiku", "anthropic")
        "claude-3-5-haiku-20241022"
        >>> resolve_model("claude-3-5-haiku-20241022", "openrouter")
        "anthropic/claude-3-5-haiku-20241022"
        >>> resolve_model("openai/gpt-4o-mini", "openrouter")
        "openai/gpt-4o-mini"
    """
    if model in MODEL_ALIASES:
        anthropic_name, openrouter_name = MODEL_ALIASES[model]
        return anthropic_name if provider == "anthropic" else openrouter_name

    if provider == "anthropic" and model.startswith("anthropic/"):
        return model.removeprefix("anthropic/")

    if provider == "openrouter" and model.startswith("claude-"):
        return f"anthropic/{model}"

    return model


# =============================================================================
# Provider Detection
# =============================================================================

_ERROR_BOTH_KEYS = """\
Both ANTHROPIC_API_KEY and OPENROUTER_API_KEY are set.
Please specify which provider to use in .kbconfig:

linkweave:
  llm:
    provider: anthropic  # or 'openrouter'
"""

_ERROR_NO_KEY = """\
No LLM API key configured.

Set one of:
  ANTHROPIC_API_KEY - for direct Anthropic API access
  OPENROUTER_API_KEY - for OpenRouter (multi-model gateway)
"""


def detect_provider(config: LLMConfig) -> str:
    """Detect which LLM provider to use.

    Raises:
        ConfigurationError: If the provider cannot be determined.
    """
    if config.provider:
        provider = config.provider.lower()
        if provider not in PROVIDERS:
            raise ConfigurationError(
                f"Invalid llm.provider '{config.provider}'.",
                guidance="Must be 'anthropic' or 'openrouter'.",
            )
        return provider

    has_anthropic = bool(os.environ.get("ANTHROPIC_API_KEY"))
    has_openrouter = bool(os.environ.get("OPENROUTER_API_KEY"))

    if has_anthropic and has_openrouter:
        raise ConfigurationError(_ERROR_BOTH_KEYS)
    if has_anthropic:
        return "anthropic"
    if has_openrouter:
        return "openrouter"
    raise ConfigurationError(_ERROR_NO_KEY)


def _require_env(name: str, url: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigurationError(
            f"{name} environment variable is required.",
            guidance=f"Get an API key at {url}",
        )
    return value


# =============================================================================
# Async Clients
# =============================================================================


def get_async_client(config: LLMConfig) -> tuple[Any, str]:
    """Get an asynchronous LLM client.

    Returns:
        Tuple of (client, provider_name) where client is
        anthropic.AsyncAnthropic or openai.AsyncOpenAI.

    Raises:
        ConfigurationError: If the provider or its key is missing.
    """
    provider = detect_provider(config)
    if provider == "anthropic":
        api_key = _require_env("ANTHROPIC_API_KEY", "https://console.anthropic.com/")
        client = anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )
    else:
        api_key = _require_env("OPENROUTER_API_KEY", "https://openrouter.ai/keys")
        client = AsyncOpenAI(
            base_url=OPENROUTER_BASE_URL,
            api_key=api_key,
            timeout=LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )
    return client, provider


def get_embedding_client() -> AsyncOpenAI:
    """Get an async client for the Jina embeddings endpoint.

    Raises:
        ConfigurationError: If JINA_API_KEY is not set.
    """
    api_key = _require_env("JINA_API_KEY", "https://jina.ai/embeddings/")
    return AsyncOpenAI(
        base_url=JINA_BASE_URL,
        api_key=api_key,
        timeout=EMBEDDING_TIMEOUT_SECONDS,
        max_retries=0,
    )
