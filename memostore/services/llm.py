"""
HTTP client for OpenAI-compatible model endpoints (chat + embeddings).

Features:
  - Retry with exponential backoff + jitter (handles 429, 500, 502, 503, 504)
  - Reusable client (connection pooling)
  - Tolerant JSON extraction from chat responses
  - Structured logging
"""

import asyncio
import json
import logging
import random
import re
import time
from typing import Any, Optional

import httpx

from ..core.config import get_settings
from ..core.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

# ── Reusable client (connection pool) ────────────────────────────────

_client: Optional[httpx.AsyncClient] = None


def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=60, write=30, pool=10),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
    return _client


async def close_client():
    """Close the shared HTTP client. Call on app shutdown."""
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
        _client = None


# ── Retry logic ──────────────────────────────────────────────────────

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 16.0


async def _retry_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs,
) -> httpx.Response:
    """Execute request with exponential backoff + jitter."""
    last_exc = None

    for attempt in range(MAX_RETRIES + 1):
        try:
            resp = await client.request(method, url, **kwargs)

            if resp.status_code not in RETRYABLE_STATUS:
                if resp.status_code >= 400:
                    logger.error("Model API error %d: %s", resp.status_code, resp.text[:500])
                resp.raise_for_status()
                return resp

            retry_after = resp.headers.get("retry-after")
            delay = float(retry_after) if retry_after else min(
                MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1)
            )
            logger.warning(
                "Model API %d (attempt %d/%d), retrying in %.1fs",
                resp.status_code, attempt + 1, MAX_RETRIES + 1, delay,
            )
            last_exc = httpx.HTTPStatusError(
                f"{resp.status_code}", request=resp.request, response=resp
            )
            await asyncio.sleep(delay)

        except httpx.TimeoutException as e:
            delay = min(MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1))
            logger.warning(
                "Model API timeout (attempt %d/%d), retrying in %.1fs",
                attempt + 1, MAX_RETRIES + 1, delay,
            )
            last_exc = e
            await asyncio.sleep(delay)

        except httpx.HTTPStatusError:
            raise  # Non-retryable HTTP errors
        except httpx.TransportError as e:
            last_exc = e
            if attempt < MAX_RETRIES:
                delay = min(MAX_DELAY, BASE_DELAY * (2 ** attempt))
                await asyncio.sleep(delay)
            continue

    raise UpstreamUnavailable(f"Model API request failed after retries: {last_exc}")


async def post_json(url: str, api_key: str, payload: dict[str, Any]) -> dict:
    """POST to a model endpoint; transport failures surface as UpstreamUnavailable."""
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    start = time.monotonic()
    try:
        resp = await _retry_request(_get_client(), "POST", url, json=payload, headers=headers)
    except httpx.HTTPStatusError as e:
        raise UpstreamUnavailable(f"Model API rejected request: {e.response.status_code}") from e
    data = resp.json()
    logger.debug("Model API %s: %dms", url.rsplit("/", 1)[-1], int((time.monotonic() - start) * 1000))
    return data


# ── Chat ─────────────────────────────────────────────────────────────

async def chat_json(
    prompt: str,
    model: Optional[str] = None,
    temperature: float = 0.0,
    max_tokens: int = 200,
) -> dict:
    """Single-turn chat that must answer with a JSON object."""
    settings = get_settings()
    if not settings.llm_api_key:
        raise ValueError("No LLM API key configured. Set LLM_API_KEY.")

    payload = {
        "model": model or settings.llm_model,
        "messages": [{"role": "user", "content": prompt}],
        "temperature": temperature,
        "max_tokens": max_tokens,
        "response_format": {"type": "json_object"},
    }
    url = f"{settings.llm_base_url.rstrip('/')}/chat/completions"
    data = await post_json(url, settings.llm_api_key, payload)

    if not isinstance(data, dict):
        raise UpstreamUnavailable("Model API returned a non-object body")
    usage = data.get("usage") or {}
    logger.info(
        "LLM chat | in=%d out=%d tokens | model=%s",
        usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0), payload["model"],
    )
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise UpstreamUnavailable("Model API returned no choices")
    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise UpstreamUnavailable("Model API returned a choice without a message")
    content = message.get("content") or ""
    if not isinstance(content, str):
        raise UpstreamUnavailable("Model API returned non-text message content")
    return parse_json_response(content)


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def parse_json_response(text: str) -> dict:
    """
    Extract a JSON object from a model answer that may be wrapped in
    markdown fences or surrounded by prose.
    """
    if not text or not text.strip():
        raise ValueError("Empty model response")

    cleaned = _FENCE.sub("", text.strip()).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError(f"No JSON object in model response: {text[:100]!r}")

    try:
        parsed = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in model response: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("Model response is not a JSON object")
    return parsed
