"""Conversation orchestration on top of a provider.

A Generation owns the running message history for one conversation: it
merges parameter layers, calls the provider, appends generated turns,
clears a forced ``tool_choice`` once that tool has been used, and
optionally executes requested tools until the model stops asking.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any

from castor.config import merge_params
from castor.errors import CastorError
from castor.messages import Message
from castor.providers import get_provider
from castor.providers.tool_choice import should_clear_tool_choice

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from castor.config import Config
    from castor.messages import Action
    from castor.providers._stream import StreamCallback
    from castor.providers.base import BaseProvider
    from castor.response import EmbedResponse, PromptResponse

    ToolsFunction = Callable[..., Any]

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ITERATIONS = 8


def as_messages(prompt: Any) -> list[Message]:
    """Coerce a string, mapping, Message, or a list of those."""
    if prompt is None:
        return []
    if isinstance(prompt, (list, tuple)):
        return [Message.coerce(item) for item in prompt]
    return [Message.coerce(prompt)]


def _tool_result_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result)


class Generation:
    """One conversation with one provider.

    Example:
        config = Config(provider="openai", model="gpt-4o-mini")
        async with Generation(config) as generation:
            response = await generation.prompt("Hello", temperature=0.2)
            print(response.text)
    """

    def __init__(
        self,
        config: Config,
        *,
        provider: BaseProvider | None = None,
        tools_function: ToolsFunction | None = None,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        global_verbose_errors: bool | None = None,
    ) -> None:
        if max_tool_iterations < 0:
            raise ValueError("max_tool_iterations must be >= 0")
        self.config = config
        self.provider = provider or get_provider(
            config, global_verbose_errors=global_verbose_errors
        )
        self.tools_function = tools_function
        self.max_tool_iterations = max_tool_iterations
        self.messages: list[Message] = []
        self.params: dict[str, Any] = {}
        self.last_response: PromptResponse | None = None

    async def __aenter__(self) -> Generation:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def prompt(
        self,
        prompt: Any = None,
        *,
        options: Mapping[str, Any] | None = None,
        on_stream: StreamCallback | None = None,
        **params: Any,
    ) -> PromptResponse:
        """Append *prompt* to the conversation and generate the next turn.

        Parameters layer as ``Config.params`` < *options* < call-site
        keyword arguments. A ``messages`` parameter replaces nothing: its
        entries are appended to the history like *prompt*.
        """
        merged = merge_params(self.config.params, options, params)
        self.messages.extend(as_messages(merged.pop("messages", None)))
        self.messages.extend(as_messages(prompt))
        if not self.messages:
            raise CastorError(
                "Nothing to send: the conversation is empty",
                hint="Pass a prompt string, a message mapping, or a list of messages.",
            )
        self.params = merged
        return await self._run(on_stream)

    async def continue_with(
        self,
        tool_results: list[Mapping[str, Any] | Message],
        *,
        on_stream: StreamCallback | None = None,
        **params: Any,
    ) -> PromptResponse:
        """Append tool results to the conversation and generate again.

        Each result is a Message or a mapping with ``tool_call_id`` and
        ``content`` (``role`` defaults to ``"tool"``).
        """
        if self.last_response is None:
            raise CastorError(
                "No generation to continue",
                hint="Call prompt() before continue_with().",
            )
        for result in tool_results:
            if isinstance(result, Message):
                self.messages.append(result)
            else:
                data = {"role": "tool", **result}
                data["content"] = _tool_result_content(data.get("content", ""))
                self.messages.append(Message.coerce(data))
        self.params = merge_params(self.params, params)
        return await self._run(on_stream)

    async def embed(self, inputs: Any, **params: Any) -> EmbedResponse:
        """Embed *inputs* with this conversation's provider."""
        return await self.provider.embed(merge_params(params, {"input": inputs}))

    async def aclose(self) -> None:
        """Close provider resources; cleanup failures are logged, not raised."""
        try:
            await self.provider.aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Cleanup should never mask the primary failure.
            logger.warning("Provider cleanup failed: %s", exc)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _run(self, on_stream: StreamCallback | None) -> PromptResponse:
        iterations = 0
        while True:
            response = await self._generate_once(on_stream)
            if not (response.requested_actions and self.tools_function):
                return response
            if iterations >= self.max_tool_iterations:
                logger.warning(
                    "Stopping after %d tool iterations with tool calls still pending",
                    iterations,
                )
                return response
            iterations += 1
            for action in response.requested_actions:
                self.messages.append(await self._execute(action))

    async def _generate_once(self, on_stream: StreamCallback | None) -> PromptResponse:
        history = list(self.messages)
        params = {**self.params, "messages": history}
        response = await self.provider.generate(params, on_stream=on_stream)

        self.messages = [*history, *response.messages]
        response.messages = list(self.messages)
        self.last_response = response

        used = [action.name for action in response.requested_actions]
        if should_clear_tool_choice(self.params.get("tool_choice"), used):
            logger.debug("Clearing forced tool_choice after call to %s", ", ".join(used))
            self.params.pop("tool_choice", None)
        return response

    async def _execute(self, action: Action) -> Message:
        logger.debug("Executing tool %s (id=%s)", action.name, action.id)
        params = action.params if isinstance(action.params, dict) else {}
        result = self.tools_function(action.name, **params)
        if inspect.isawaitable(result):
            result = await result
        return Message(
            role="tool",
            content=_tool_result_content(result),
            tool_call_id=action.id,
            action_id=action.id,
            action_name=action.name,
        )


async def generate(
    prompt: Any,
    *,
    config: Config,
    options: Mapping[str, Any] | None = None,
    on_stream: StreamCallback | None = None,
    tools_function: ToolsFunction | None = None,
    **params: Any,
) -> PromptResponse:
    """Run a single prompt and close the provider afterwards.

    Example:
        config = Config(provider="anthropic", model="claude-sonnet-4-5")
        response = await generate("Summarize this", config=config)
        print(response.text)
    """
    async with Generation(config, tools_function=tools_function) as generation:
        return await generation.prompt(prompt, options=options, on_stream=on_stream, **params)
