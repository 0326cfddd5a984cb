# utils/relationships.py
from __future__ import annotations

import random
import re
from datetime import datetime

STRANGER = 0
ACQUAINTANCE = 1
FRIENDLY = 2
FRIEND = 3
CLOSE_FRIEND = 4
MAX_LEVEL = CLOSE_FRIEND

LEVEL_NAMES = {
    STRANGER: "Stranger",
    ACQUAINTANCE: "Acquaintance",
    FRIENDLY: "Friendly",
    FRIEND: "Friend",
    CLOSE_FRIEND: "Close Friend",
}

# interaction_count -> minimum level
_THRESHOLDS = ((100, FRIEND), (30, FRIENDLY), (10, ACQUAINTANCE))

FAST_TRACK_WINDOW_DAYS = 7
FAST_TRACK_EVERY = 5

MIN_TOPIC_MESSAGE_CHARS = 10
MAX_TOPICS_PER_MESSAGE = 3

_HUMOR_RE = re.compile(r"lol|haha|😂|🤣|lmao|rofl|funny|joke|remember when|that time", re.IGNORECASE)

# Personalization odds
SHARED_INTEREST_CHANCE = 0.10
INSIDE_JOKE_CHANCE = 0.15
REGULAR_CHATTER_CHANCE = 0.10
REGULAR_CHATTER_MIN_COUNT = 20


def level_name(level: int) -> str:
    return LEVEL_NAMES.get(int(level or 0), "Stranger")


def level_for_count(count: int) -> int:
    count = max(0, int(count or 0))
    for need, lvl in _THRESHOLDS:
        if count >= need:
            return lvl
    return STRANGER


def next_level(current: int, new_count: int, days_since_last: float | None) -> int:
    """Level after an interaction bringing the total to ``new_count``.

    Threshold advancement, then a fast-track step for every 5th interaction
    inside a week. The result is never below ``current``.
    """
    level = max(int(current or 0), level_for_count(new_count))
    if (
        days_since_last is not None
        and days_since_last < FAST_TRACK_WINDOW_DAYS
        and new_count % FAST_TRACK_EVERY == 0
        and level < MAX_LEVEL
    ):
        level += 1
    return min(level, MAX_LEVEL)


def days_between(earlier: datetime | None, later: datetime) -> float | None:
    if earlier is None:
        return None
    return (later - earlier).total_seconds() / 86400.0


def looks_humorous(text: str) -> bool:
    return bool(_HUMOR_RE.search(text or ""))


def merge_topics(existing: dict[str, int], topics: list[str]) -> dict[str, int]:
    out = dict(existing or {})
    for t in topics[:MAX_TOPICS_PER_MESSAGE]:
        key = str(t or "").strip().lower()
        if key:
            out[key] = int(out.get(key, 0)) + 1
    return out


def top_topics(topics: dict[str, int], n: int = 5) -> list[tuple[str, int]]:
    return sorted(topics.items(), key=lambda kv: (-int(kv[1]), kv[0]))[:n]


def recent_jokes(jokes: list[dict], n: int = 3) -> list[dict]:
    return sorted(jokes, key=lambda j: str(j.get("timestamp") or ""), reverse=True)[:n]


def choose_personalizations(
    *,
    level: int,
    interaction_count: int,
    shared_interests: list[str],
    inside_jokes: list[dict],
    rng: random.Random | None = None,
) -> list[str]:
    """Instructions for the rewrite pass. Empty means send the base text as-is."""
    rng = rng or random
    if level < FRIENDLY:
        return []

    out: list[str] = []
    if shared_interests and rng.random() < SHARED_INTEREST_CHANCE:
        interest = rng.choice(shared_interests)
        out.append(f'Add a brief, natural reference to your shared interest in "{interest}".')

    if level >= FRIEND and inside_jokes and rng.random() < INSIDE_JOKE_CHANCE:
        joke = rng.choice(recent_jokes(inside_jokes))
        out.append(f'Add a subtle, natural callback to your inside joke about "{joke.get("reference", "")}".')

    if interaction_count > REGULAR_CHATTER_MIN_COUNT and rng.random() < REGULAR_CHATTER_CHANCE:
        out.append("Add a small acknowledgment that you chat with this person regularly.")

    return out


def personalization_prompt(base_text: str, instructions: list[str], level: int) -> str:
    lines = "\n".join(instructions)
    return (
        "You need to personalize this message for someone you've been chatting with regularly.\n\n"
        f'Original message: "{base_text}"\n\n'
        "Apply these personalizations naturally (don't make it obvious you're adding them):\n"
        f"{lines}\n\n"
        f"The relationship level is {int(level)}/4 (higher = closer friend).\n\n"
        "Guidelines:\n"
        "- Keep the same 14-year-old girl personality\n"
        "- Keep the main information from the original message\n"
        "- Don't make the personalizations feel forced\n"
        '- Never say "since we\'re friends" or mention that you are adding references\n'
        "- Keep roughly the same length as the original"
    )
