"""SDK-backed transport clients.

Each client takes a serialized wire payload and returns plain mappings, so
request/response normalization never depends on SDK model classes. SDKs are
imported lazily.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from castor.errors import APIError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

#: Keyword arguments accepted by ``chat.completions.create``; anything else
#: travels in ``extra_body`` (OpenRouter and Ollama extensions).
OPENAI_CHAT_KEYS: frozenset[str] = frozenset(
    {
        "model",
        "messages",
        "audio",
        "frequency_penalty",
        "function_call",
        "functions",
        "logit_bias",
        "logprobs",
        "max_completion_tokens",
        "max_tokens",
        "metadata",
        "modalities",
        "n",
        "parallel_tool_calls",
        "prediction",
        "presence_penalty",
        "prompt_cache_key",
        "reasoning_effort",
        "response_format",
        "safety_identifier",
        "seed",
        "service_tier",
        "stop",
        "store",
        "stream",
        "stream_options",
        "temperature",
        "tool_choice",
        "tools",
        "top_logprobs",
        "top_p",
        "user",
        "verbosity",
        "web_search_options",
    }
)
OPENAI_EMBEDDING_KEYS: frozenset[str] = frozenset(
    {"model", "input", "dimensions", "encoding_format", "user"}
)


def to_dict(obj: Any) -> dict[str, Any]:
    """Convert an SDK response object into a plain mapping."""
    if isinstance(obj, dict):
        return obj
    model_dump = getattr(obj, "model_dump", None)
    if callable(model_dump):
        return model_dump()
    raise APIError(f"Unexpected SDK response type: {type(obj).__name__}")


async def _iter_dicts(stream: Any) -> AsyncIterator[dict[str, Any]]:
    async for item in stream:
        yield to_dict(item)


def split_extra_body(
    payload: dict[str, Any], known: frozenset[str] | None
) -> dict[str, Any]:
    """Move keys the SDK signature does not accept into ``extra_body``."""
    if known is None:
        return dict(payload)
    kwargs = {k: v for k, v in payload.items() if k in known}
    extra = {k: v for k, v in payload.items() if k not in known}
    if extra:
        kwargs["extra_body"] = extra
    return kwargs


class OpenAIClient:
    """Transport over the ``openai`` SDK.

    ``endpoint`` selects Chat Completions (``"chat"``) or the Responses API
    (``"responses"``). OpenRouter and Ollama use this client through their
    OpenAI-compatible base URLs.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str | None = None,
        endpoint: str = "chat",
        known_keys: frozenset[str] | None = None,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.endpoint = endpoint
        self.known_keys = known_keys
        self.default_headers = default_headers
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the async OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise APIError(
                    "openai package not installed",
                    hint="uv pip install openai",
                ) from e
            self._client = AsyncOpenAI(
                # Local servers such as Ollama ignore the key but the SDK requires one.
                api_key=self.api_key or "unused",
                base_url=self.base_url,
                default_headers=self.default_headers,
            )
        return self._client

    async def create(
        self, payload: dict[str, Any], *, stream: bool
    ) -> dict[str, Any] | AsyncIterator[dict[str, Any]]:
        client = self._get_client()
        kwargs = split_extra_body(payload, self.known_keys)
        if stream:
            kwargs["stream"] = True
        if self.endpoint == "responses":
            result = await client.responses.create(**kwargs)
        else:
            result = await client.chat.completions.create(**kwargs)
        if stream:
            return _iter_dicts(result)
        return to_dict(result)

    async def embed(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        kwargs = split_extra_body(payload, OPENAI_EMBEDDING_KEYS)
        return to_dict(await client.embeddings.create(**kwargs))

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.close()


class AnthropicClient:
    """Transport over the ``anthropic`` SDK (Messages API)."""

    def __init__(self, api_key: str | None, *, base_url: str | None = None) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the async Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError as e:
                raise APIError(
                    "anthropic package not installed",
                    hint="uv pip install anthropic",
                ) from e
            self._client = AsyncAnthropic(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def create(
        self, payload: dict[str, Any], *, stream: bool
    ) -> dict[str, Any] | AsyncIterator[dict[str, Any]]:
        client = self._get_client()
        kwargs = dict(payload)
        if stream:
            kwargs["stream"] = True
            return _iter_dicts(await client.messages.create(**kwargs))
        return to_dict(await client.messages.create(**kwargs))

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.close()
