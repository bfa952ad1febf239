"""Typed runtime configuration for structured_agent."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, TypeVar

if TYPE_CHECKING:
    from structured_agent.retry import RetryPolicy

logger = logging.getLogger(__name__)

MAX_STEPS_ENV = "STRUCTURED_AGENT_MAX_STEPS"
AUTO_EXECUTE_TOOLS_ENV = "STRUCTURED_AGENT_AUTO_EXECUTE_TOOLS"
MAX_DUPLICATE_TOOL_CALLS_ENV = "STRUCTURED_AGENT_MAX_DUPLICATE_TOOL_CALLS"
MAX_TOOL_CALLS_PER_TOOL_ENV = "STRUCTURED_AGENT_MAX_TOOL_CALLS_PER_TOOL"
MAX_RETRIES_ENV = "STRUCTURED_AGENT_MAX_RETRIES"
RETRY_BASE_DELAY_ENV = "STRUCTURED_AGENT_RETRY_BASE_DELAY"
RETRY_MAX_DELAY_ENV = "STRUCTURED_AGENT_RETRY_MAX_DELAY"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

T = TypeVar("T")


def _env_value(name: str, default: T, parse: Callable[[str], T], expected: str) -> T:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return parse(raw.strip())
    except ValueError:
        logger.warning(
            "Invalid %s=%r; expected %s. Defaulting to %r.",
            name,
            raw,
            expected,
            default,
        )
        return default


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(raw)


def _parse_positive_int(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise ValueError(raw)
    return value


def _parse_optional_limit(raw: str) -> int | None:
    if raw.lower() in {"none", "off", "unlimited"}:
        return None
    return _parse_positive_int(raw)


def _parse_non_negative_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError(raw)
    return value


def _parse_non_negative_float(raw: str) -> float:
    value = float(raw)
    if value < 0:
        raise ValueError(raw)
    return value


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentConfiguration:
    """Bounds for one agent run. Fixed for the lifetime of the loop.

    Attributes:
        max_steps: Maximum number of model requests in a run.
        auto_execute_tools: Execute requested tools in-loop. When False the
            loop stops at the first tool request and hands control back.
        max_duplicate_tool_calls: How many times the same tool may run with
            identical input before the run is stopped.
        max_tool_calls_per_tool: How many times a single tool may run with any
            input. ``None`` leaves only ``max_steps`` as the bound.
    """

    max_steps: int = 10
    auto_execute_tools: bool = True
    max_duplicate_tool_calls: int = 2
    max_tool_calls_per_tool: int | None = 5

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {self.max_steps}")
        if self.max_duplicate_tool_calls < 1:
            raise ValueError(
                f"max_duplicate_tool_calls must be >= 1, got {self.max_duplicate_tool_calls}"
            )
        if self.max_tool_calls_per_tool is not None and self.max_tool_calls_per_tool < 1:
            raise ValueError(
                f"max_tool_calls_per_tool must be >= 1 or None, got {self.max_tool_calls_per_tool}"
            )

    @classmethod
    def from_env(cls) -> AgentConfiguration:
        """Build configuration from environment variables, keeping defaults for unset ones."""
        default = cls()
        return cls(
            max_steps=_env_value(
                MAX_STEPS_ENV, default.max_steps, _parse_positive_int, "a positive integer",
            ),
            auto_execute_tools=_env_value(
                AUTO_EXECUTE_TOOLS_ENV, default.auto_execute_tools, _parse_bool, "on/off boolean",
            ),
            max_duplicate_tool_calls=_env_value(
                MAX_DUPLICATE_TOOL_CALLS_ENV,
                default.max_duplicate_tool_calls,
                _parse_positive_int,
                "a positive integer",
            ),
            max_tool_calls_per_tool=_env_value(
                MAX_TOOL_CALLS_PER_TOOL_ENV,
                default.max_tool_calls_per_tool,
                _parse_optional_limit,
                "a positive integer or 'none'",
            ),
        )


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryConfiguration:
    """How outbound requests are retried on transient failure.

    Attributes:
        max_retries: Retries after the first attempt. 0 disables retrying.
        base_delay: Starting backoff delay (seconds).
        max_delay: Cap on the exponential part of the backoff (seconds).
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    @property
    def is_enabled(self) -> bool:
        return self.max_retries > 0

    @classmethod
    def default(cls) -> RetryConfiguration:
        return cls()

    @classmethod
    def disabled(cls) -> RetryConfiguration:
        return cls(max_retries=0, base_delay=0.0, max_delay=0.0)

    @classmethod
    def aggressive(cls) -> RetryConfiguration:
        return cls(max_retries=10, base_delay=0.5, max_delay=120.0)

    @classmethod
    def conservative(cls) -> RetryConfiguration:
        return cls(max_retries=3, base_delay=2.0, max_delay=30.0)

    @classmethod
    def custom(
        cls,
        max_retries: int,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ) -> RetryConfiguration:
        return cls(max_retries=max_retries, base_delay=base_delay, max_delay=max_delay)

    @classmethod
    def from_env(cls) -> RetryConfiguration:
        default = cls()
        return cls(
            max_retries=_env_value(
                MAX_RETRIES_ENV, default.max_retries, _parse_non_negative_int, "a non-negative integer",
            ),
            base_delay=_env_value(
                RETRY_BASE_DELAY_ENV, default.base_delay, _parse_non_negative_float, "seconds >= 0",
            ),
            max_delay=_env_value(
                RETRY_MAX_DELAY_ENV, default.max_delay, _parse_non_negative_float, "seconds >= 0",
            ),
        )

    def policy(self) -> RetryPolicy:
        """Convert to the policy object the retry loop consumes."""
        from structured_agent.retry import ExponentialBackoffPolicy, NoRetryPolicy

        if not self.is_enabled:
            return NoRetryPolicy()
        return ExponentialBackoffPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )
