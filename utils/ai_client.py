# utils/ai_client.py
from __future__ import annotations

import asyncio
import logging
import os
import random
from typing import Any, Optional

import httpx
import config

log = logging.getLogger("bot.ai")


# ----------------------------
# Stable exception types
# ----------------------------
class AIError(RuntimeError):
    """Base class for AI errors."""


class AIConfigError(AIError):
    """Missing/invalid configuration (e.g., no API key, kill switch on)."""


class AITimeoutError(AIError):
    """Request exceeded timeout."""


class AIConnectionError(AIError):
    """Network/DNS/TLS/connection issues reaching the API."""


class AIRateLimitError(AIError):
    """429 rate limit / quota / throttling."""


class AIAuthError(AIError):
    """401/403 auth problems."""


class AIStatusError(AIError):
    """Non-OK response that isn't auth/rate-limit."""

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(message or f"AI request failed (status {status_code})")
        self.status_code = int(status_code)


# ----------------------------
# Config helpers
# ----------------------------
def _require_key() -> str:
    if getattr(config, "AI_DISABLED", False):
        raise AIConfigError("AI is disabled by the operator (AI_DISABLED)")
    key = (getattr(config, "OPENAI_API_KEY", None) or "").strip()
    if not key:
        raise AIConfigError("OPENAI_API_KEY is missing")
    return key


def _base_url() -> str:
    return (getattr(config, "OPENAI_BASE_URL", None) or "https://api.openai.com/v1").rstrip("/")


def _model() -> str:
    return (getattr(config, "OPENAI_MODEL", None) or "gpt-4o-mini").strip()


def _embedding_model() -> str:
    return (getattr(config, "OPENAI_EMBEDDING_MODEL", None) or "text-embedding-3-small").strip()


def _default_timeout_s() -> float:
    try:
        return float(getattr(config, "OPENAI_TIMEOUT_S", 30.0) or 30.0)
    except Exception:
        return 30.0


# ----------------------------
# Response parsing
# ----------------------------
def _extract_message_text(resp_json: dict[str, Any]) -> str:
    """Pull the first choice's message content from a Chat Completions response."""
    choices = resp_json.get("choices") or []
    if not choices:
        return ""
    msg = (choices[0] or {}).get("message") or {}
    content = msg.get("content")
    if isinstance(content, str):
        return content.strip()
    # Some adapters return content parts: [{"type": "text", "text": "..."}]
    if isinstance(content, list):
        parts = [str(p.get("text") or "") for p in content if isinstance(p, dict)]
        return "".join(parts).strip()
    return ""


def _try_parse_error_message(r: httpx.Response) -> str:
    """Best-effort parse of OpenAI error JSON, else short body."""
    try:
        data = r.json()
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()[:800]
    except Exception:
        pass
    try:
        return (r.text or "")[:800]
    except Exception:
        return ""


def _parse_retry_after_seconds(r: httpx.Response) -> Optional[float]:
    try:
        ra = (r.headers.get("Retry-After") or "").strip()
        return float(int(ra)) if ra else None
    except Exception:
        return None


def _jitter_sleep(base_s: float) -> float:
    # jitter within +-40%
    j = 0.6 + random.random() * 0.8
    return max(0.05, base_s * j)


def _get_env_int(name: str, default: int, *, min_value: int = 0) -> int:
    try:
        v = int(str(os.getenv(name, str(default))).strip())
    except Exception:
        v = default
    return max(min_value, v)


# ----------------------------
# Shared AsyncClient (faster, fewer sockets)
# ----------------------------
_client: Optional[httpx.AsyncClient] = None
_client_lock = asyncio.Lock()

# Per-process safety valve on simultaneous in-flight requests.
_proc_sem: Optional[asyncio.Semaphore] = None
_proc_sem_lock = asyncio.Lock()


async def _get_proc_semaphore() -> asyncio.Semaphore:
    global _proc_sem
    if _proc_sem is not None:
        return _proc_sem
    async with _proc_sem_lock:
        if _proc_sem is None:
            _proc_sem = asyncio.Semaphore(_get_env_int("AI_PROCESS_CONCURRENCY", 20, min_value=1))
        return _proc_sem


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is not None:
        return _client
    async with _client_lock:
        if _client is None:
            limits = httpx.Limits(max_connections=50, max_keepalive_connections=20, keepalive_expiry=30.0)
            _client = httpx.AsyncClient(limits=limits)
        return _client


async def aclose_ai_client() -> None:
    """Close the shared client on shutdown."""
    global _client
    async with _client_lock:
        if _client is not None:
            try:
                await _client.aclose()
            except Exception:
                log.debug("AI client close failed", exc_info=True)
            _client = None


async def _post_json(path: str, payload: dict[str, Any], *, timeout_s: float | None = None) -> dict[str, Any]:
    """POST with retries on 429/5xx/timeouts. Raises the stable AIError types."""
    key = _require_key()
    url = _base_url() + path
    timeout_s = timeout_s if timeout_s is not None else _default_timeout_s()
    attempts = _get_env_int("OPENAI_RETRY_ATTEMPTS", 2, min_value=1)  # initial + 1 retry

    client = await _get_client()
    sem = await _get_proc_semaphore()

    for attempt in range(1, attempts + 1):
        try:
            async with sem:
                r = await client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {key}",
                        "Content-Type": "application/json",
                        "User-Agent": "bri-bot/1.0 (utils/ai_client.py)",
                    },
                    json=payload,
                    timeout=httpx.Timeout(timeout_s),
                )

            if r.status_code in (401, 403):
                raise AIAuthError("AI authentication failed (check API key / permissions).")

            if r.status_code == 429:
                if attempt < attempts:
                    ra = _parse_retry_after_seconds(r)
                    await asyncio.sleep(ra if ra is not None else _jitter_sleep(1.0))
                    continue
                raise AIRateLimitError("AI is rate-limited right now (429).")

            if r.status_code in (500, 502, 503, 504):
                if attempt < attempts:
                    await asyncio.sleep(_jitter_sleep(1.0))
                    continue
                raise AIStatusError(r.status_code, f"AI service error ({r.status_code}).")

            if r.status_code < 200 or r.status_code >= 300:
                msg = _try_parse_error_message(r)
                raise AIStatusError(r.status_code, f"AI request failed ({r.status_code}): {msg}")

            return r.json()

        except httpx.TimeoutException as e:
            if attempt < attempts:
                await asyncio.sleep(_jitter_sleep(0.6))
                continue
            raise AITimeoutError("AI request timed out.") from e

        except httpx.RequestError as e:
            if attempt < attempts:
                await asyncio.sleep(_jitter_sleep(0.6))
                continue
            raise AIConnectionError("Failed to reach AI service.") from e

        except AIError:
            raise

        except Exception as e:
            if attempt < attempts:
                await asyncio.sleep(_jitter_sleep(0.6))
                continue
            raise AIError(f"AI request failed: {type(e).__name__}: {e}") from e

    raise AIError("AI request failed after retries.")


# ----------------------------
# Public API
# ----------------------------
async def chat_completion(
    messages: list[dict[str, str]],
    *,
    json_mode: bool = False,
    temperature: float = 0.7,
    max_tokens: int = 500,
    timeout_s: float | None = None,
) -> str:
    """Chat Completions call. ``json_mode`` sets response_format=json_object."""
    if not messages:
        raise AIError("chat_completion() requires at least one message.")

    payload: dict[str, Any] = {
        "model": _model(),
        "temperature": float(temperature),
        "max_tokens": int(max_tokens),
        "messages": messages,
    }
    if json_mode:
        payload["response_format"] = {"type": "json_object"}

    data = await _post_json("/chat/completions", payload, timeout_s=timeout_s)
    return _extract_message_text(data)


async def generate_text(
    user: str,
    *,
    system: str,
    temperature: float = 0.8,
    max_tokens: int = 350,
    json_mode: bool = False,
) -> str:
    """Single system+user turn. Raises stable exceptions for callers to handle."""
    if not isinstance(user, str) or not user.strip():
        raise AIError("generate_text() missing required 'user' prompt text.")
    out = await chat_completion(
        [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        json_mode=json_mode,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    return str(out)


async def embed_text(text: str) -> list[float]:
    """Return the embedding vector for ``text``."""
    text = (text or "").strip()
    if not text:
        raise AIError("embed_text() requires non-empty text.")
    data = await _post_json("/embeddings", {"model": _embedding_model(), "input": text[:8000]})
    try:
        vec = data["data"][0]["embedding"]
        return [float(x) for x in vec]
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise AIError("Embedding response missing data[0].embedding") from e
