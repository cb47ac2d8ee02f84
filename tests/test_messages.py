"""Canonical Message/Action model and the structured-output soft-fail."""

from __future__ import annotations

import pytest

from castor.errors import CastError
from castor.messages import Action, Message

pytestmark = pytest.mark.unit


# =============================================================================
# Message
# =============================================================================


def test_defaults() -> None:
    message = Message(content="hi")
    assert message.role == "user"
    assert message.raw_content == "hi"
    assert message.content_type == "text/plain"
    assert message.charset == "UTF-8"
    assert message.action_requested is False


def test_unknown_role_raises_cast_error() -> None:
    with pytest.raises(CastError, match="Unknown message role"):
        Message(role="narrator", content="x")


def test_content_type_inferred_from_content_shape() -> None:
    typed = Message(content=[{"type": "text", "text": "a"}])
    untyped = Message(content=["a", "b"])
    assert typed.content_type == "multipart/mixed"
    assert untyped.content_type == "array"


def test_text_joins_text_blocks() -> None:
    message = Message(
        content=[{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]
    )
    assert message.text == "ab"


# =============================================================================
# Structured output
# =============================================================================


def test_json_content_type_parses_on_construction() -> None:
    body = '{"name":"John","age":30}'
    message = Message(role="assistant", content=body, content_type="application/json")

    assert message.content == {"name": "John", "age": 30}
    assert message.raw_content == body
    assert message.text == body


def test_parse_structured_soft_fails_on_invalid_json() -> None:
    message = Message(role="assistant", content="{invalid")

    result = message.parse_structured()

    assert result == "{invalid"
    assert message.content == "{invalid"
    assert message.raw_content == "{invalid"
    assert message.content_type == "application/json"


def test_parse_structured_leaves_non_string_content() -> None:
    message = Message(role="assistant", content=[{"type": "text", "text": "x"}])
    assert message.parse_structured() == [{"type": "text", "text": "x"}]


# =============================================================================
# Action
# =============================================================================


def test_action_parses_json_arguments() -> None:
    action = Action.from_arguments("call_1", "search", '{"q": "pizza"}')
    assert action.params == {"q": "pizza"}
    assert action.arguments == '{"q": "pizza"}'


def test_action_tolerates_invalid_arguments() -> None:
    action = Action.from_arguments("call_1", "search", '{"q": ')
    assert action.params is None
    assert action.arguments == '{"q": '


def test_action_from_mapping_and_empty() -> None:
    assert Action.from_arguments("c", "f", {"a": 1}).arguments == '{"a": 1}'
    assert Action.from_arguments("c", "f", "").params == {}
    assert Action.from_arguments("c", "f", None).params == {}


# =============================================================================
# Conversion
# =============================================================================


def test_to_common_includes_tool_calls() -> None:
    message = Message(
        role="assistant",
        content="",
        requested_actions=[Action.from_arguments("call_1", "f", {"a": 1})],
    )
    assert message.to_common() == {
        "role": "assistant",
        "content": "",
        "tool_calls": [{"id": "call_1", "name": "f", "arguments": '{"a": 1}'}],
    }


def test_to_common_keeps_raw_string_after_parse() -> None:
    message = Message(role="assistant", content='{"a": 1}', content_type="application/json")
    assert message.to_common()["content"] == '{"a": 1}'


def test_coerce_accepts_strings_mappings_and_messages() -> None:
    existing = Message(content="x")
    assert Message.coerce(existing) is existing
    assert Message.coerce("hi").content == "hi"
    assert Message.coerce({"text": "hi"}).content == "hi"

    tool = Message.coerce({"role": "tool", "content": "42", "tool_call_id": "call_1"})
    assert tool.role == "tool"
    assert tool.tool_call_id == "call_1"


def test_coerce_reads_openai_tool_call_shape() -> None:
    message = Message.coerce(
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}
            ],
        }
    )
    assert message.requested_actions == [Action("c1", "f", {}, "{}")]


def test_coerce_rejects_other_types() -> None:
    with pytest.raises(CastError):
        Message.coerce(42)
