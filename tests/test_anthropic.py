"""Anthropic Messages: lenient block casting, request shape, prefill, streaming."""

from __future__ import annotations

import pytest

from castor.config import Config
from castor.errors import APIError, CastError, InvalidRequestError, StreamAbandonedError
from castor.messages import Action, Message
from castor.providers.anthropic import (
    DEFAULT_MAX_TOKENS,
    JSON_PREFILL,
    AnthropicProvider,
    AnthropicRequest,
    AnthropicStreamAccumulator,
    parse_response_payload,
)
from castor.providers.anthropic_content import (
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    cast_block,
    cast_blocks,
    parse_data_uri,
)
from tests.helpers import ScriptedClient, anthropic_message

pytestmark = pytest.mark.contract

MODEL = "claude-sonnet-4-5"


def _request(**kwargs) -> AnthropicRequest:
    return AnthropicRequest(model=MODEL, **kwargs)


# =============================================================================
# Content blocks (lenient)
# =============================================================================


def test_unknown_block_type_passes_through_unchanged() -> None:
    raw = {"type": "web_search_tool_result", "tool_use_id": "srv_1", "content": []}
    assert cast_block(raw) == raw


def test_unknown_untyped_shape_passes_through() -> None:
    assert cast_block({"foo": "bar"}) == {"foo": "bar"}


def test_non_mapping_is_rejected() -> None:
    with pytest.raises(CastError):
        cast_block(42)


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "text", "text": "hi"},
        {"type": "image", "source": {"type": "url", "url": "https://x/y.png"}},
        {"type": "tool_use", "id": "toolu_1", "name": "f", "input": {"a": 1}},
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "42"},
        {"type": "thinking", "thinking": "hmm", "signature": "sig"},
        {"type": "redacted_thinking", "data": "xyz"},
    ],
)
def test_canonical_blocks_round_trip(raw: dict) -> None:
    assert cast_block(raw).to_wire() == raw


def test_image_data_uri_becomes_base64_source() -> None:
    block = cast_block({"image": "data:image/png;base64,iVBOR"})
    assert isinstance(block, ImageBlock)
    assert block.to_wire()["source"] == {
        "type": "base64",
        "media_type": "image/png",
        "data": "iVBOR",
    }
    assert parse_data_uri("https://x/y.png") == {"type": "url", "url": "https://x/y.png"}


def test_key_inference() -> None:
    assert isinstance(cast_block({"text": "hi"}), TextBlock)
    assert isinstance(cast_block({"tool_use_id": "t1", "content": "ok"}), ToolResultBlock)
    tool_use = cast_block({"id": "t1", "name": "f", "input": '{"a": 1}'})
    assert tool_use.input == {"a": 1}


def test_tool_use_with_invalid_json_input_raises() -> None:
    with pytest.raises(CastError):
        cast_block({"type": "tool_use", "id": "t1", "name": "f", "input": "{"})


def test_multi_key_mapping_expands_into_blocks() -> None:
    blocks = cast_blocks({"text": "look", "image": "https://x/y.png"})
    assert [type(block) for block in blocks] == [TextBlock, ImageBlock]


def test_tool_result_content_is_serialized() -> None:
    block = ToolResultBlock(tool_use_id="t1", content={"hits": 3})
    assert block.content == '{"hits": 3}'


def test_search_result_requires_content() -> None:
    with pytest.raises(InvalidRequestError):
        cast_block({"type": "search_result", "source": "s", "title": "t", "content": []})


# =============================================================================
# Request
# =============================================================================


def test_max_tokens_always_emitted() -> None:
    assert _request(messages="Hi").to_wire() == {
        "model": MODEL,
        "messages": [{"role": "user", "content": "Hi"}],
        "max_tokens": DEFAULT_MAX_TOKENS,
    }


@pytest.mark.parametrize(
    ("field", "value"),
    [("temperature", 1.5), ("top_k", -1), ("top_p", 1.1), ("service_tier", "priority")],
)
def test_field_constraints(field: str, value: object) -> None:
    with pytest.raises(InvalidRequestError) as exc_info:
        _request(messages="Hi", **{field: value})
    assert exc_info.value.field == field


def test_mcp_servers_limit_and_shape() -> None:
    with pytest.raises(InvalidRequestError):
        _request(messages="Hi", mcp_servers=[{"name": f"s{i}", "url": "u"} for i in range(21)])

    wire = _request(
        messages="Hi", mcps=[{"name": "docs", "url": "https://mcp", "authorization": "tok"}]
    ).to_wire()
    assert wire["mcp_servers"] == [
        {"type": "url", "name": "docs", "url": "https://mcp", "authorization_token": "tok"}
    ]


def test_system_turns_are_lifted_out_of_messages() -> None:
    wire = _request(
        messages=[{"role": "system", "content": "Be terse."}, {"role": "user", "content": "Hi"}]
    ).to_wire()
    assert wire["system"] == "Be terse."
    assert wire["messages"] == [{"role": "user", "content": "Hi"}]


def test_instructions_set_system() -> None:
    assert _request(instructions="Be kind.", messages="Hi").to_wire()["system"] == "Be kind."


def test_instructions_and_system_turns_combine() -> None:
    wire = _request(
        instructions="A.", messages=[{"role": "developer", "content": "B."}, "Hi"]
    ).to_wire()
    assert wire["system"] == [{"type": "text", "text": "A."}, {"type": "text", "text": "B."}]


def test_same_role_turns_are_merged() -> None:
    wire = _request(messages=["a", "b"]).to_wire()
    assert wire["messages"] == [
        {"role": "user", "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}
    ]


def test_tools_use_input_schema_and_choice_maps() -> None:
    schema = {"type": "object", "properties": {"q": {"type": "string"}}}
    wire = _request(
        messages="Hi",
        tools=[{"type": "function", "function": {"name": "search", "parameters": schema}}],
        tool_choice={"name": "search"},
    ).to_wire()
    assert wire["tools"] == [{"name": "search", "input_schema": schema}]
    assert wire["tool_choice"] == {"type": "tool", "name": "search"}


@pytest.mark.parametrize(
    ("value", "expected"),
    [("required", {"type": "any"}), ("auto", {"type": "auto"}), ("none", {"type": "none"})],
)
def test_tool_choice_strings(value: str, expected: dict) -> None:
    assert _request(messages="Hi", tool_choice=value).to_wire()["tool_choice"] == expected


def test_unknown_tool_choice_string_raises() -> None:
    with pytest.raises(CastError):
        _request(messages="Hi", tool_choice="sometimes")


def test_canonical_tool_turns_convert() -> None:
    assistant = Message(
        role="assistant",
        content="Checking.",
        requested_actions=[Action.from_arguments("toolu_1", "f", {"a": 1})],
    )
    tool = Message(role="tool", content="42", tool_call_id="toolu_1")

    wire = _request(messages=["Go", assistant, tool]).to_wire()

    assert wire["messages"][1] == {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Checking."},
            {"type": "tool_use", "id": "toolu_1", "name": "f", "input": {"a": 1}},
        ],
    }
    assert wire["messages"][2] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "42"}],
    }


def test_unmodelled_blocks_survive_request_validation() -> None:
    server_call = {
        "type": "server_tool_use",
        "id": "srvtoolu_1",
        "name": "web_search",
        "input": {"query": "beaver dams"},
    }
    results = {
        "type": "web_search_tool_result",
        "tool_use_id": "srvtoolu_1",
        "content": [{"type": "web_search_result", "url": "https://a", "title": "A"}],
    }

    wire = _request(
        messages=["Search", {"role": "assistant", "content": [server_call, results]}]
    ).to_wire()

    assert wire["messages"][1] == {"role": "assistant", "content": [server_call, results]}


def test_json_object_appends_prefill_and_hides_response_format() -> None:
    wire = _request(messages="Hi", response_format="json_object").to_wire()
    assert wire["messages"][-1] == {"role": "assistant", "content": JSON_PREFILL}
    assert "response_format" not in wire


def test_json_schema_format_is_rejected() -> None:
    with pytest.raises(InvalidRequestError):
        _request(
            messages="Hi",
            response_format={"type": "json_schema", "json_schema": {"schema": {}}},
        )


def test_messages_assignment_lifts_system() -> None:
    request = _request(messages="Hi")
    request.messages = [{"role": "system", "content": "S."}, "Hello"]
    assert request.to_wire()["system"] == "S."
    assert request.to_wire()["messages"] == [{"role": "user", "content": "Hello"}]


# =============================================================================
# Response parsing
# =============================================================================


def test_parse_text_tools_thinking() -> None:
    raw = anthropic_message(
        blocks=[
            {"type": "thinking", "thinking": "plan", "signature": "s"},
            {"type": "text", "text": "Let me look."},
            {"type": "tool_use", "id": "toolu_1", "name": "f", "input": {"a": 1}},
        ],
        stop_reason="tool_use",
    )
    response = parse_response_payload(raw)

    assert response.text == "Let me look."
    assert response.message.metadata["thinking"] == "plan"
    assert response.requested_actions[0].params == {"a": 1}
    assert response.finish_reason == "tool_use"
    assert response.usage.total_tokens == 6


def test_prefix_is_prepended_to_first_text_block() -> None:
    response = parse_response_payload(anthropic_message('"a": 1}'), prefix="{")
    assert response.text == '{"a": 1}'


# =============================================================================
# Streaming
# =============================================================================


def _events(*, text_parts: list[str], tool_json: list[str] | None = None) -> list[dict]:
    events: list[dict] = [
        {
            "type": "message_start",
            "message": {"id": "msg_1", "model": MODEL, "usage": {"input_tokens": 9}},
        },
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        *(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": t}}
            for t in text_parts
        ),
        {"type": "content_block_stop", "index": 0},
        {"type": "ping"},
    ]
    if tool_json is not None:
        events.append(
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_1", "name": "f", "input": {}},
            }
        )
        events.extend(
            {
                "type": "content_block_delta",
                "index": 1,
                "delta": {"type": "input_json_delta", "partial_json": part},
            }
            for part in tool_json
        )
        events.append({"type": "content_block_stop", "index": 1})
    events.append(
        {
            "type": "message_delta",
            "delta": {"stop_reason": "tool_use" if tool_json else "end_turn"},
            "usage": {"output_tokens": 4},
        }
    )
    events.append({"type": "message_stop"})
    return events


@pytest.mark.asyncio
async def test_stream_text_and_tool_input_fragments() -> None:
    calls: list[tuple[str | None, bool]] = []
    accumulator = AnthropicStreamAccumulator(
        on_stream=lambda message, delta, final: calls.append((delta, final))
    )
    for event in _events(text_parts=["Hel", "lo"], tool_json=['{"a"', ": 1}"]):
        await accumulator.feed(event)
    message = accumulator.ensure_finished()

    assert message.content == "Hello"
    assert message.requested_actions[0].params == {"a": 1}
    assert accumulator.finish_reason == "tool_use"
    assert accumulator.usage_raw == {"input_tokens": 9, "output_tokens": 4}
    assert calls == [("Hel", False), ("lo", False), (None, True)]


@pytest.mark.asyncio
async def test_stream_malformed_tool_input_soft_fails() -> None:
    accumulator = AnthropicStreamAccumulator()
    for event in _events(text_parts=[], tool_json=['{"a"']):
        await accumulator.feed(event)
    assert accumulator.ensure_finished().requested_actions[0].params is None


@pytest.mark.asyncio
async def test_stream_error_event_raises() -> None:
    accumulator = AnthropicStreamAccumulator()
    with pytest.raises(APIError) as exc_info:
        await accumulator.feed(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        )
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_stream_without_message_stop_is_abandoned() -> None:
    accumulator = AnthropicStreamAccumulator()
    for event in _events(text_parts=["Hi"])[:-1]:
        await accumulator.feed(event)
    with pytest.raises(StreamAbandonedError):
        accumulator.ensure_finished()


@pytest.mark.asyncio
async def test_provider_stream_with_prefill(anthropic_config: Config) -> None:
    client = ScriptedClient(script=[_events(text_parts=['"a"', ": 1}"])])
    provider = AnthropicProvider(anthropic_config, client=client)

    response = await provider.generate(
        {"messages": ["Give JSON"], "stream": True, "response_format": "json_object"}
    )

    assert response.message.content == {"a": 1}
    assert response.usage.output_tokens == 4
    assert client.last_payload["stream"] is True
