from __future__ import annotations

import pytest

from castor.usage import Usage

pytestmark = pytest.mark.unit


def test_total_computed_when_missing() -> None:
    assert Usage(input_tokens=3, output_tokens=4).total_tokens == 7


def test_addition_sums_counts_and_supports_sum() -> None:
    a = Usage(input_tokens=1, output_tokens=2, cached_tokens=1)
    b = Usage(input_tokens=10, output_tokens=20)

    total = a + b
    assert (total.input_tokens, total.output_tokens, total.total_tokens) == (11, 22, 33)
    assert total.cached_tokens == 1
    assert sum([a, b]) == total
    assert a + None is a


def test_from_openai_chat_reads_details() -> None:
    usage = Usage.from_openai_chat(
        {
            "prompt_tokens": 10,
            "completion_tokens": 5,
            "total_tokens": 15,
            "prompt_tokens_details": {"cached_tokens": 4, "audio_tokens": 0},
            "completion_tokens_details": {"reasoning_tokens": 2, "audio_tokens": 3},
        }
    )
    assert usage is not None
    assert usage.input_tokens == 10
    assert usage.output_tokens == 5
    assert usage.cached_tokens == 4
    assert usage.reasoning_tokens == 2
    assert usage.audio_tokens == 3


def test_from_anthropic() -> None:
    usage = Usage.from_anthropic(
        {
            "input_tokens": 12,
            "output_tokens": 3,
            "cache_read_input_tokens": 5,
            "cache_creation_input_tokens": 7,
            "service_tier": "standard",
        }
    )
    assert usage is not None
    assert usage.total_tokens == 15
    assert usage.cached_tokens == 5
    assert usage.cache_creation_tokens == 7
    assert usage.service_tier == "standard"


def test_from_openai_responses() -> None:
    usage = Usage.from_openai_responses(
        {
            "input_tokens": 8,
            "output_tokens": 2,
            "total_tokens": 10,
            "input_tokens_details": {"cached_tokens": 1},
            "output_tokens_details": {"reasoning_tokens": 1},
        }
    )
    assert usage is not None
    assert usage.cached_tokens == 1
    assert usage.reasoning_tokens == 1


def test_from_ollama_converts_durations() -> None:
    usage = Usage.from_ollama(
        {
            "prompt_eval_count": 6,
            "eval_count": 50,
            "total_duration": 2_500_000_000,
            "eval_duration": 1_000_000_000,
        }
    )
    assert usage is not None
    assert usage.input_tokens == 6
    assert usage.output_tokens == 50
    assert usage.duration_ms == 2500
    assert usage.provider_details["eval_duration_ms"] == 1000
    assert usage.provider_details["tokens_per_second"] == 50.0


def test_empty_usage_is_none() -> None:
    assert Usage.from_openai_chat(None) is None
    assert Usage.from_anthropic({}) is None


@pytest.mark.parametrize(
    ("raw", "expected_input"),
    [
        ({"prompt_tokens": 2, "completion_tokens": 1}, 2),
        ({"input_tokens": 3, "output_tokens": 1, "service_tier": "standard"}, 3),
        ({"input_tokens": 4, "output_tokens": 1, "input_tokens_details": {}}, 4),
        ({"prompt_eval_count": 5, "eval_count": 1}, 5),
        ({"prompt_tokens": 6, "total_tokens": 6}, 6),
    ],
)
def test_from_provider_usage_detects_shape(raw: dict, expected_input: int) -> None:
    usage = Usage.from_provider_usage(raw)
    assert usage is not None
    assert usage.input_tokens == expected_input
