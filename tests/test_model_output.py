"""Tests for strict decoding of structured model replies."""
from __future__ import annotations

import pytest

from utils.ai_client import AITimeoutError
from utils.model_output import (
    InsideJokeOut,
    InterestAnalysisOut,
    MalformedModelOutput,
    TopicsOut,
    decode_model_output,
    generate_structured,
    with_fallback,
)


def test_decodes_valid_json():
    out = decode_model_output('{"topics": ["music", "school"]}', TopicsOut)
    assert out.topics == ["music", "school"]


def test_extra_keys_ignored():
    out = decode_model_output('{"is_inside_joke": false, "confidence": 0.2}', InsideJokeOut)
    assert out.is_inside_joke is False
    assert out.joke is None


@pytest.mark.parametrize(
    "raw,reason",
    [
        ("", "empty reply"),
        ("not json at all", "invalid JSON"),
        ('["a", "b"]', "not an object"),
        ('{"interest_detected": true, "enthusiasm": 3}', "validation error"),
    ],
)
def test_malformed_raises(raw, reason):
    with pytest.raises(MalformedModelOutput) as exc:
        decode_model_output(raw, InterestAnalysisOut)
    assert exc.value.schema_name == "InterestAnalysisOut"
    assert reason in str(exc.value)


def test_excerpt_is_bounded():
    with pytest.raises(MalformedModelOutput) as exc:
        decode_model_output("x" * 5000, TopicsOut)
    assert len(exc.value.raw_excerpt) == 300


@pytest.mark.asyncio
async def test_generate_structured_uses_json_mode(monkeypatch):
    from utils import model_output

    seen = {}

    async def _fake(messages, **kwargs):
        seen.update(kwargs)
        seen["messages"] = messages
        return '{"topics": ["games"]}'

    monkeypatch.setattr(model_output, "chat_completion", _fake)
    out = await generate_structured("hi", TopicsOut, system="sys")
    assert out.topics == ["games"]
    assert seen["json_mode"] is True
    assert seen["messages"][0] == {"role": "system", "content": "sys"}


@pytest.mark.asyncio
async def test_with_fallback_returns_value_on_success():
    async def ok():
        return 42

    assert await with_fallback(ok(), 0, what="test") == 42


@pytest.mark.asyncio
async def test_with_fallback_on_ai_error():
    async def slow():
        raise AITimeoutError("timed out")

    assert await with_fallback(slow(), "fallback", what="test") == "fallback"


@pytest.mark.asyncio
async def test_with_fallback_on_malformed():
    async def bad():
        return decode_model_output("nope", TopicsOut)

    assert await with_fallback(bad(), [], what="test") == []


@pytest.mark.asyncio
async def test_with_fallback_propagates_other_errors():
    async def boom():
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await with_fallback(boom(), None, what="test")
