"""Provider protocol and the shared request/response cycle."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

from castor.config import resolve_verbose_errors
from castor.errors import APIError, CastorError
from castor.providers._errors import wrap_provider_error
from castor.response import EmbedResponse, PromptResponse
from castor.retry import retry_async, wrap_generation_error
from castor.schema import wants_json

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from castor._model import WireModel
    from castor.config import Config
    from castor.providers._stream import StreamAccumulator, StreamCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers."""

    streaming: bool = True
    tools: bool = True
    structured_outputs: bool = False
    embeddings: bool = False
    #: ``messages=`` appends only genuinely new entries.
    union_merge_messages: bool = False


@runtime_checkable
class Client(Protocol):
    """Transport boundary: takes a wire payload, returns raw dicts.

    Non-streaming calls return one response mapping; streaming calls return
    an async iterator of chunk (or event) mappings.
    """

    async def create(
        self, payload: dict[str, Any], *, stream: bool
    ) -> dict[str, Any] | AsyncIterator[dict[str, Any]]:
        """Send a generation request."""
        ...


@runtime_checkable
class Provider(Protocol):
    """Minimal provider protocol: build requests, generate, embed."""

    name: str

    def build_request(self, params: Mapping[str, Any]) -> WireModel:
        """Cast and validate parameters into a typed request."""
        ...

    async def generate(
        self,
        params: Mapping[str, Any],
        *,
        on_stream: StreamCallback | None = None,
    ) -> PromptResponse:
        """Generate one assistant turn."""
        ...

    async def embed(self, params: Mapping[str, Any]) -> EmbedResponse:
        """Create embeddings."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Feature capabilities."""
        ...


class BaseProvider:
    """Shared generation cycle: build, serialize, call with retry, normalize.

    Subclasses set ``request_class`` and implement ``create_client``,
    ``parse_response`` and ``stream_accumulator``.
    """

    name: ClassVar[str] = "base"
    request_class: ClassVar[type[WireModel]]
    embed_request_class: ClassVar[type[WireModel] | None] = None
    default_model: ClassVar[str | None] = None
    #: Class-level verbose errors flag (second in lookup precedence).
    verbose_errors_enabled: ClassVar[bool | None] = None
    _capabilities: ClassVar[ProviderCapabilities] = ProviderCapabilities()

    def __init__(
        self,
        config: Config,
        *,
        client: Any = None,
        global_verbose_errors: bool | None = None,
    ) -> None:
        self.config = config
        self._client: Any = client
        self._global_verbose_errors = global_verbose_errors

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    @property
    def verbose_errors(self) -> bool:
        return resolve_verbose_errors(
            self.config.verbose_errors,
            type(self).verbose_errors_enabled,
            self._global_verbose_errors,
        )

    def _get_client(self) -> Any:
        """Lazily initialize and return the transport client."""
        if self._client is None:
            self._client = self.create_client()
        return self._client

    def create_client(self) -> Any:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Request building
    # -------------------------------------------------------------------------

    def prepare_params(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Fill provider-level defaults before casting."""
        prepared = dict(params)
        if not prepared.get("model"):
            prepared["model"] = self.config.model or self.default_model
        return prepared

    def build_request(self, params: Mapping[str, Any]) -> WireModel:
        return self.request_class(**self.prepare_params(params))

    def response_format_of(self, request: WireModel) -> dict[str, Any] | None:
        value = getattr(request, "response_format", None)
        return value if isinstance(value, dict) else None

    # -------------------------------------------------------------------------
    # Response normalization
    # -------------------------------------------------------------------------

    def parse_response(self, raw: dict[str, Any], request: WireModel) -> PromptResponse:
        raise NotImplementedError

    def stream_accumulator(
        self, request: WireModel, on_stream: StreamCallback | None
    ) -> StreamAccumulator:
        raise NotImplementedError

    def parse_stream_usage(self, accumulator: StreamAccumulator) -> Any:
        return None

    def finalize_response(
        self, response: PromptResponse, request: WireModel
    ) -> PromptResponse:
        """Apply structured-output parsing to the generated message."""
        message = response.message
        if message is not None and wants_json(self.response_format_of(request)):
            message.parse_structured()
        return response

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    async def _consume_stream(
        self, payload: dict[str, Any], accumulator: StreamAccumulator
    ) -> PromptResponse:
        stream = await self._get_client().create(payload, stream=True)
        async for chunk in stream:
            await accumulator.feed(chunk)
        message = accumulator.ensure_finished()
        return PromptResponse(
            messages=[message],
            usage=self.parse_stream_usage(accumulator),
            raw_response=accumulator.chunks,
            finish_reason=accumulator.finish_reason,
            model=accumulator.model,
            id=accumulator.response_id,
        )

    async def _call(self, phase: str, factory: Any) -> Any:
        try:
            return await factory()
        except asyncio.CancelledError:
            raise
        except CastorError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.name,
                phase=phase,
                message=f"{self.name} {phase} failed",
            ) from e

    async def generate(
        self,
        params: Mapping[str, Any],
        *,
        on_stream: StreamCallback | None = None,
    ) -> PromptResponse:
        """Generate one assistant turn.

        Validation and cast errors surface before any network call; provider
        failures are retried per ``Config.retry`` and then normalized. A
        stream that fails after text reached ``on_stream`` is not retried.
        """
        request = self.build_request(params)
        payload = request.to_wire()
        stream = bool(payload.get("stream"))
        logger.debug("%s generate model=%s stream=%s", self.name, payload.get("model"), stream)

        async def attempt() -> PromptResponse:
            if stream:
                accumulator = self.stream_accumulator(request, on_stream)
                try:
                    return await self._call(
                        "generate", lambda: self._consume_stream(payload, accumulator)
                    )
                except APIError as e:
                    if on_stream is None or not accumulator.emitted:
                        raise
                    # on_stream has seen deltas from this attempt; never replay them.
                    raise wrap_generation_error(e, verbose=self.verbose_errors) from e
            raw = await self._call(
                "generate", lambda: self._get_client().create(payload, stream=False)
            )
            return self.parse_response(raw, request)

        response = await retry_async(
            attempt, policy=self.config.retry, verbose=self.verbose_errors
        )
        response.raw_request = payload
        return self.finalize_response(response, request)

    def build_embed_request(self, params: Mapping[str, Any]) -> WireModel:
        if self.embed_request_class is None:
            raise APIError(
                f"{self.name} provider does not support embeddings",
                provider=self.name,
                phase="embed",
            )
        return self.embed_request_class(**self.prepare_params(params))

    def parse_embed_response(self, raw: dict[str, Any]) -> EmbedResponse:
        raise NotImplementedError

    async def embed(self, params: Mapping[str, Any]) -> EmbedResponse:
        """Create embeddings with the same retry and error contract as generate."""
        request = self.build_embed_request(params)
        payload = request.to_wire()

        async def attempt() -> EmbedResponse:
            raw = await self._call("embed", lambda: self._get_client().embed(payload))
            return self.parse_embed_response(raw)

        return await retry_async(
            attempt, policy=self.config.retry, verbose=self.verbose_errors
        )

    async def aclose(self) -> None:
        """Close underlying client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        aclose = getattr(client, "aclose", None)
        if callable(aclose):
            await aclose()
