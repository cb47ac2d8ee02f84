"""Mock provider: deterministic offline behavior through the full cycle."""

from __future__ import annotations

import pytest

from castor.config import Config
from castor.providers import get_provider
from castor.providers.mock import MockProvider, to_pig_latin

pytestmark = pytest.mark.unit

SEARCH_TOOL = {"name": "search", "parameters": {"type": "object"}}


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Hello world", "Ellohay orldway"),
        ("apple", "appleway"),
        ("string", "ingstray"),
        ("Hi, there!", "Ihay, erethay!"),
        ("rhythm", "rhythmay"),
        ("", ""),
    ],
)
def test_pig_latin(text: str, expected: str) -> None:
    assert to_pig_latin(text) == expected


@pytest.mark.asyncio
async def test_reply_is_deterministic(mock_config: Config) -> None:
    provider = MockProvider(mock_config)

    first = await provider.generate({"messages": ["Hello world"]})
    second = await provider.generate({"messages": ["Hello world"]})

    assert first.text == "Ellohay orldway"
    assert first.id == second.id
    assert first.id.startswith("mock-")
    assert first.finish_reason == "end_turn"
    assert first.usage.input_tokens == len("Hello world")


@pytest.mark.asyncio
async def test_instructions_are_echoed_first(mock_config: Config) -> None:
    provider = MockProvider(mock_config)
    response = await provider.generate({"messages": ["world"], "instructions": "Hello"})
    assert response.text == "Ellohay orldway"


@pytest.mark.asyncio
async def test_unknown_parameters_are_kept(mock_config: Config) -> None:
    provider = MockProvider(mock_config)
    response = await provider.generate({"messages": ["Hi"], "seed": 7})
    assert response.raw_request["seed"] == 7
    assert response.raw_request["model"] == "mock-model"


@pytest.mark.asyncio
async def test_forced_tool_choice_yields_tool_call(mock_config: Config) -> None:
    provider = MockProvider(mock_config)

    response = await provider.generate(
        {"messages": ["Find pizza"], "tools": [SEARCH_TOOL], "tool_choice": {"name": "search"}}
    )

    action = response.requested_actions[0]
    assert action.name == "search"
    assert action.params == {}
    assert response.finish_reason == "tool_use"


@pytest.mark.asyncio
async def test_auto_tool_choice_answers_in_text(mock_config: Config) -> None:
    provider = MockProvider(mock_config)
    response = await provider.generate(
        {"messages": ["Hi"], "tools": [SEARCH_TOOL], "tool_choice": "auto"}
    )
    assert response.requested_actions == []
    assert response.text == "Ihay"


@pytest.mark.asyncio
async def test_tool_result_turn_is_not_forced_again(mock_config: Config) -> None:
    provider = MockProvider(mock_config)
    response = await provider.generate(
        {
            "messages": [
                "Find pizza",
                {"role": "tool", "tool_call_id": "t1", "content": "three places"},
            ],
            "tools": [SEARCH_TOOL],
            "tool_choice": "required",
        }
    )
    assert response.requested_actions == []
    assert response.text == "eethray acesplay"


@pytest.mark.asyncio
async def test_streaming_emits_word_deltas(mock_config: Config) -> None:
    deltas: list[str | None] = []
    provider = MockProvider(mock_config)

    response = await provider.generate(
        {"messages": ["Hello world"], "stream": True},
        on_stream=lambda message, delta, final: deltas.append(delta),
    )

    assert response.text == "Ellohay orldway"
    assert deltas == ["Ellohay", " orldway", None]
    assert response.usage.output_tokens == len("Ellohay orldway")


@pytest.mark.asyncio
async def test_json_response_is_parsed(mock_config: Config) -> None:
    provider = MockProvider(mock_config)
    # Pig latin leaves punctuation-only input untouched.
    response = await provider.generate({"messages": ["{}"], "response_format": "json_object"})
    assert response.message.content == {}


@pytest.mark.asyncio
async def test_embeddings_are_deterministic(mock_config: Config) -> None:
    provider = MockProvider(mock_config)

    first = await provider.embed({"input": ["a", "b"], "dimensions": 8})
    second = await provider.embed({"input": "a", "dimensions": 8})

    assert len(first.data) == 2
    assert all(len(vector) == 8 for vector in first.data)
    assert first.data[0] == second.data[0]
    assert first.data[0] != first.data[1]
    assert all(0 <= value <= 1 for value in first.data[0])


def test_use_mock_overrides_the_configured_provider() -> None:
    config = Config(provider="openai", model="gpt-4o-mini", use_mock=True)
    assert config.api_key is None
    assert isinstance(get_provider(config), MockProvider)
