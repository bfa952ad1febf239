"""Rate-limit hints parsed from provider HTTP response headers.

Each provider family reports its limits differently. The retry loop only
needs one number out of them, the suggested wait before the next attempt,
so the extractors below normalize everything into ``RateLimitInfo``.

Usage::

    from structured_agent.rate_limit import extract_rate_limit_info

    info = extract_rate_limit_info("anthropic/claude-sonnet-4-5", response.headers)
    if info.suggested_wait_time is not None:
        await asyncio.sleep(info.suggested_wait_time)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitInfo:
    """Normalized rate-limit state. Durations are in seconds."""

    retry_after: float | None = None
    remaining_requests: int | None = None
    requests_reset_in: float | None = None
    remaining_tokens: int | None = None
    tokens_reset_in: float | None = None

    @property
    def suggested_wait_time(self) -> float | None:
        if self.retry_after is not None:
            return self.retry_after
        return self.requests_reset_in

    @property
    def is_empty(self) -> bool:
        return self == EMPTY_RATE_LIMIT_INFO


EMPTY_RATE_LIMIT_INFO = RateLimitInfo()


# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------

_PROVIDER_PREFIXES = {
    "gemini/": "google",
    "vertex_ai/": "google",
    "anthropic/": "anthropic",
    "openai/": "openai",
    "azure/": "openai",
}

_OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4-", "chatgpt-")


def _get_provider(model: str) -> str:
    """Extract the provider family from a model string."""
    for prefix, provider in _PROVIDER_PREFIXES.items():
        if model.startswith(prefix):
            return provider
    if any(model.startswith(p) for p in _OPENAI_PREFIXES):
        return "openai"
    if model.startswith("claude"):
        return "anthropic"
    if model.startswith("gemini"):
        return "google"
    return "default"


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in headers.items()}


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _parse_duration(value: str | None) -> float | None:
    """Parse OpenAI-style reset durations: ``"120ms"``, ``"1s"``, ``"6m0s"``, ``"2h"``."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    plain = _parse_float(text)
    if plain is not None:
        return plain

    units = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
    total = 0.0
    number = ""
    i = 0
    matched = False
    while i < len(text):
        ch = text[i]
        if ch.isdigit() or ch == ".":
            number += ch
            i += 1
            continue
        unit = "ms" if text.startswith("ms", i) else ch
        if unit not in units or not number:
            return None
        total += float(number) * units[unit]
        number = ""
        matched = True
        i += len(unit)
    if number or not matched:
        return None
    return total


def _parse_rfc3339_delta(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds from *now* until an RFC 3339 timestamp, floored at zero."""
    if value is None:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        when = datetime.fromisoformat(text)
    except ValueError:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------


def extract_openai_rate_limit_info(headers: Mapping[str, str]) -> RateLimitInfo:
    h = _lower_keys(headers)
    return RateLimitInfo(
        retry_after=_parse_float(h.get("retry-after")),
        remaining_requests=_parse_int(h.get("x-ratelimit-remaining-requests")),
        requests_reset_in=_parse_duration(h.get("x-ratelimit-reset-requests")),
        remaining_tokens=_parse_int(h.get("x-ratelimit-remaining-tokens")),
        tokens_reset_in=_parse_duration(h.get("x-ratelimit-reset-tokens")),
    )


def extract_anthropic_rate_limit_info(
    headers: Mapping[str, str],
    now: datetime | None = None,
) -> RateLimitInfo:
    h = _lower_keys(headers)
    return RateLimitInfo(
        retry_after=_parse_float(h.get("retry-after")),
        remaining_requests=_parse_int(h.get("anthropic-ratelimit-requests-remaining")),
        requests_reset_in=_parse_rfc3339_delta(h.get("anthropic-ratelimit-requests-reset"), now),
        remaining_tokens=_parse_int(h.get("anthropic-ratelimit-tokens-remaining")),
        tokens_reset_in=_parse_rfc3339_delta(h.get("anthropic-ratelimit-tokens-reset"), now),
    )


def extract_gemini_rate_limit_info(headers: Mapping[str, str]) -> RateLimitInfo:
    # Gemini only reports retry-after.
    h = _lower_keys(headers)
    return RateLimitInfo(retry_after=_parse_float(h.get("retry-after")))


_EXTRACTORS: dict[str, Callable[[Mapping[str, str]], RateLimitInfo]] = {
    "openai": extract_openai_rate_limit_info,
    "anthropic": extract_anthropic_rate_limit_info,
    "google": extract_gemini_rate_limit_info,
}


def extract_rate_limit_info(model: str, headers: Mapping[str, str] | None) -> RateLimitInfo:
    """Pick the extractor for *model*'s provider family and apply it.

    Unknown families get the OpenAI-compatible extractor, which most
    proxies and OpenAI-compatible servers follow.
    """
    if not headers:
        return EMPTY_RATE_LIMIT_INFO
    provider = _get_provider(model)
    extractor = _EXTRACTORS.get(provider, extract_openai_rate_limit_info)
    info = extractor(headers)
    if not info.is_empty:
        logger.debug("Rate limit info for %s (%s): %s", model, provider, info)
    return info
