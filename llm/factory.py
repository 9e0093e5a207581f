"""Factory that returns an LlmProvider for a provider name or model id."""

import re
from typing import Iterator

import config
from .anthropic_adapter import anthropic_adapter
from .base import BaseProviderAdapter, OperateOptions, StreamChunk
from .errors import ConfigurationError
from .gemini_adapter import gemini_adapter
from .openai_adapter import openai_adapter
from .openrouter_adapter import openrouter_adapter
from .provider import LlmProvider
from .response import OperateResponse

ADAPTERS: dict[str, BaseProviderAdapter] = {
    adapter.name: adapter
    for adapter in (anthropic_adapter, gemini_adapter, openai_adapter, openrouter_adapter)
}

# Checked in order against the lower-cased model id; Gemini resource names
# ("models/gemini-2.5-flash") are not vendor/model ids
MODEL_MATCHERS = (
    ("openrouter", re.compile(r"^(?!models/)[^/]*/")),
    ("anthropic", re.compile(r"claude|sonnet|opus|haiku")),
    ("gemini", re.compile(r"gemini")),
    ("openai", re.compile(r"gpt|^o\d")),
)


def determine_model_provider(value: str | None = None) -> tuple[str, str]:
    """Map a provider name or model id to ``(model, provider)``.

    Provider names select that provider's default model.  Model ids are
    matched by vendor keywords; ``vendor/model`` ids go to OpenRouter.
    Anything unrecognised runs on ``config.LLM_PROVIDER``.
    """
    if not value:
        provider = config.LLM_PROVIDER
        adapter = ADAPTERS.get(provider)
        return (adapter.default_model if adapter else ""), provider

    if value in ADAPTERS:
        return ADAPTERS[value].default_model, value

    for name, adapter in ADAPTERS.items():
        if value == adapter.default_model:
            return value, name

    lowered = value.lower()
    for name, pattern in MODEL_MATCHERS:
        if pattern.search(lowered):
            return value, name

    return value, config.LLM_PROVIDER


def create_provider(model_or_provider: str | None = None, api_key: str | None = None, **kwargs) -> LlmProvider:
    """Return an LlmProvider for ``model_or_provider``.

    Provider is selected by name ("anthropic", "gemini", "openai",
    "openrouter"), inferred from a model id, or taken from LLM_PROVIDER.

    Raises:
        ConfigurationError: The provider is not one of the above
    """
    model, provider = determine_model_provider(model_or_provider)
    adapter = ADAPTERS.get(provider)
    if adapter is None:
        raise ConfigurationError(
            f"Unknown LLM provider '{provider}'. "
            f"Valid options: {', '.join(sorted(ADAPTERS))}."
        )
    return LlmProvider(adapter, model=model or None, api_key=api_key, **kwargs)


def operate(input, model: str | None = None, options: OperateOptions | None = None, **overrides) -> OperateResponse:
    """One-off operate call on a fresh provider."""
    return create_provider(model).operate(input, options, **overrides)


def stream(input, model: str | None = None, options: OperateOptions | None = None, **overrides) -> Iterator[StreamChunk]:
    """One-off streaming call on a fresh provider."""
    yield from create_provider(model).stream(input, options, **overrides)
