# utils/model_output.py
"""
Strict decoding of JSON-mode model output.

Every structured LLM call goes through ``decode_model_output`` with a pydantic
schema. A reply that is not JSON, or does not match the schema, raises
``MalformedModelOutput``; callers decide whether to degrade via ``with_fallback``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from utils.ai_client import AIError, chat_completion
from utils.prom import llm_degradations_total

log = logging.getLogger("bot.ai")

T = TypeVar("T", bound=BaseModel)
F = TypeVar("F")

_EXCERPT_CHARS = 300


class MalformedModelOutput(AIError):
    """Model reply failed JSON parsing or schema validation."""

    def __init__(self, schema_name: str, raw_excerpt: str, reason: str = ""):
        msg = f"Malformed model output for {schema_name}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.schema_name = schema_name
        self.raw_excerpt = raw_excerpt


class _Out(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


# ---- Relationship analysis ----
class TopicsOut(_Out):
    topics: list[str] = Field(default_factory=list, max_length=10)


class InsideJoke(_Out):
    reference: str = Field(min_length=1)
    context: str = ""


class InsideJokeOut(_Out):
    is_inside_joke: bool
    joke: Optional[InsideJoke] = None


# ---- Interests & storylines ----
class DetectedInterest(_Out):
    name: str = Field(min_length=1, max_length=128)
    description: str = ""
    facts: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class InterestAnalysisOut(_Out):
    interest_detected: bool
    enthusiasm: float = Field(default=0.0, ge=0.0, le=1.0)
    interest: Optional[DetectedInterest] = None


class NewStorylineOut(_Out):
    event_key: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1, max_length=256)
    description: str = ""
    initial_update: str = ""


# ---- Journal ----
class JournalOut(_Out):
    title: str = Field(min_length=1, max_length=256)
    content: str = Field(min_length=1)
    mood: str = ""
    referenced_interests: list[str] = Field(default_factory=list)
    referenced_storylines: list[str] = Field(default_factory=list)


class PendingInterestOut(_Out):
    name: str = Field(min_length=1, max_length=128)
    description: str = ""


class SheetExtractionOut(_Out):
    updated_sheet: dict[str, Any]
    updated_routine: Optional[dict[str, Any]] = None
    rationale: str = ""
    new_interests: list[PendingInterestOut] = Field(default_factory=list)


# ---- Decoding ----
def decode_model_output(raw_text: str | None, schema: type[T]) -> T:
    """Parse ``raw_text`` as JSON and validate it against ``schema``.

    Raises MalformedModelOutput carrying the schema name and a raw excerpt.
    """
    name = schema.__name__
    text = (raw_text or "").strip()
    excerpt = text[:_EXCERPT_CHARS]
    if not text:
        raise MalformedModelOutput(name, excerpt, "empty reply")
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedModelOutput(name, excerpt, f"invalid JSON ({e})") from e
    if not isinstance(data, dict):
        raise MalformedModelOutput(name, excerpt, "top-level value is not an object")
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise MalformedModelOutput(name, excerpt, f"{e.error_count()} validation error(s)") from e


async def generate_structured(
    prompt: str,
    schema: type[T],
    *,
    system: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 800,
) -> T:
    """JSON-mode chat call decoded strictly into ``schema``."""
    messages: list[dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    raw = await chat_completion(
        messages,
        json_mode=True,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    return decode_model_output(str(raw), schema)


async def with_fallback(coro: Awaitable[F], fallback: F, *, what: str) -> F:
    """Await ``coro``; on any AIError log a degradation and return ``fallback``."""
    try:
        return await coro
    except MalformedModelOutput as e:
        log.warning("LLM degraded (%s): %s | excerpt=%r", what, e, e.raw_excerpt[:120])
    except AIError as e:
        log.warning("LLM degraded (%s): %s: %s", what, type(e).__name__, e)
    llm_degradations_total.labels(operation=what).inc()
    return fallback
