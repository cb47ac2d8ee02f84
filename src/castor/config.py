"""Configuration: frozen Config plus layered parameter and verbosity lookup."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import TYPE_CHECKING, Any, Literal

from dotenv import load_dotenv

from castor.errors import ConfigurationError
from castor.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Mapping

load_dotenv()

ProviderName = Literal[
    "openai",
    "openai_responses",
    "anthropic",
    "openrouter",
    "ollama",
    "mock",
]

SUPPORTED_PROVIDERS: tuple[str, ...] = (
    "openai",
    "openai_responses",
    "anthropic",
    "openrouter",
    "ollama",
    "mock",
)

# Provider-specific API key environment variable names
_API_KEY_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "openai_responses": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

_DEFAULT_BASE_URLS: dict[str, str] = {
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
}

VERBOSE_ERRORS_ENV_VAR = "CASTOR_VERBOSE_ERRORS"


@dataclass(frozen=True)
class Config:
    """Immutable configuration for one agent.

    Provider and model are required. API keys are auto-resolved from the
    provider's standard environment variable; Ollama and the mock provider
    run without one.

    Example:
        config = Config(provider="anthropic", model="claude-sonnet-4-5")
        # API key is automatically resolved from ANTHROPIC_API_KEY
    """

    provider: ProviderName
    model: str
    #: Auto-resolved from the provider's ``*_API_KEY`` variable when *None*.
    api_key: str | None = None
    base_url: str | None = None
    use_mock: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    #: ``None`` defers to the class flag, global flag, then environment.
    verbose_errors: bool | None = None
    #: Agent-level generation parameters (lowest precedence after defaults).
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Auto-resolve API key and base URL, then validate."""
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}",
            )
        if not isinstance(self.model, str) or not self.model:
            raise ConfigurationError(
                "model must be a non-empty string",
                hint="Pass Config(model=...), e.g. 'gpt-4o-mini'.",
            )

        if self.base_url is None:
            base_url = _DEFAULT_BASE_URLS.get(self.provider)
            if self.provider == "ollama" and os.environ.get("OLLAMA_HOST"):
                base_url = os.environ["OLLAMA_HOST"].rstrip("/") + "/v1"
            object.__setattr__(self, "base_url", base_url)

        env_var = _API_KEY_ENV_VARS.get(self.provider)
        if self.api_key is None and env_var and not self.use_mock:
            object.__setattr__(self, "api_key", os.environ.get(env_var))

        # Validate: real API calls need a key
        if env_var and not self.use_mock and not self.api_key:
            raise ConfigurationError(
                f"API key required for {self.provider}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, use_mock={self.use_mock})"
        )

    __repr__ = __str__


def resolve_verbose_errors(
    instance: bool | None = None,
    class_flag: bool | None = None,
    global_flag: bool | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> bool:
    """Resolve verbose error reporting from precedence-ordered sources.

    The first explicit source set to True wins (instance, then class, then
    global); the ``CASTOR_VERBOSE_ERRORS`` environment variable is the
    fallback and must equal ``"true"``.
    """
    for source in (instance, class_flag, global_flag):
        if source is True:
            return True
    environ = os.environ if env is None else env
    return environ.get(VERBOSE_ERRORS_ENV_VAR) == "true"


def merge_params(*layers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge parameter layers left to right; later layers win.

    Callers pass layers in increasing precedence (defaults, agent, prompt,
    call-site). A ``None`` value never erases a value set by an earlier layer.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is None and key in merged:
                continue
            merged[key] = value
    return merged
