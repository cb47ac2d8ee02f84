"""Provider implementations and name-based dispatch.

Provider modules are imported on first use so an installation without a
given SDK can still use the others.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

from castor.config import SUPPORTED_PROVIDERS
from castor.errors import ConfigurationError

from .base import BaseProvider, Provider, ProviderCapabilities

if TYPE_CHECKING:
    from castor.config import Config

# name -> "module:Class", resolved lazily
_REGISTRY: dict[str, str | type[BaseProvider]] = {
    "openai": "castor.providers.openai_chat:OpenAIChatProvider",
    "openai_responses": "castor.providers.openai_responses:OpenAIResponsesProvider",
    "anthropic": "castor.providers.anthropic:AnthropicProvider",
    "openrouter": "castor.providers.openrouter:OpenRouterProvider",
    "ollama": "castor.providers.ollama:OllamaProvider",
    "mock": "castor.providers.mock:MockProvider",
}


def register_provider(name: str, provider_cls: type[BaseProvider]) -> None:
    """Register (or replace) the provider class served for *name*."""
    if not name:
        raise ConfigurationError("Provider name must be a non-empty string")
    _REGISTRY[name] = provider_cls


def get_provider_class(name: str) -> type[BaseProvider]:
    """Resolve a provider name to its class."""
    entry = _REGISTRY.get(name)
    if entry is None:
        raise ConfigurationError(
            f"Unknown provider: {name!r}",
            hint=f"Supported providers: {', '.join(sorted(_REGISTRY))}",
        )
    if isinstance(entry, str):
        module_name, _, class_name = entry.partition(":")
        entry = getattr(import_module(module_name), class_name)
        _REGISTRY[name] = entry
    return entry


def get_provider(config: Config, *, name: str | None = None, **kwargs: Any) -> BaseProvider:
    """Instantiate the provider for *config*.

    ``use_mock`` forces the mock provider; *name* selects a provider added
    with register_provider instead of ``config.provider``.
    """
    if config.use_mock:
        name = "mock"
    name = name or config.provider
    return get_provider_class(name)(config, **kwargs)


__all__ = [
    "SUPPORTED_PROVIDERS",
    "BaseProvider",
    "Provider",
    "ProviderCapabilities",
    "get_provider",
    "get_provider_class",
    "register_provider",
]
