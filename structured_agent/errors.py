"""Structured error types for structured_agent.

Two families live here:

- ``LLMError`` and its subclasses describe a failed provider request. The
  retry layer decides what to do with them from their class alone:

      from structured_agent.errors import LLMAuthError, LLMRateLimitError

      try:
          step = await stream.pull()
      except LLMAuthError:
          # Permanent: fix the key, retrying won't help
          ...
      except LLMRateLimitError:
          # Transient: already retried with backoff, caller may wait longer
          ...

- ``AgentError`` and its subclasses end an agent run (step limit, output
  that never decodes, misuse of the loop).
"""

from __future__ import annotations

from typing import Any


class LLMError(Exception):
    """Base for all provider request errors."""

    retryable: bool = False

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class LLMTransientError(LLMError):
    """Failure expected to clear up on its own; retry with backoff."""

    retryable = True


class LLMRateLimitError(LLMTransientError):
    """Rate limit (429). Retry after the provider's suggested wait."""


class LLMServerError(LLMTransientError):
    """Provider-side failure (5xx)."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.status_code = status_code
        # Only real 5xx responses are worth another attempt.
        self.retryable = 500 <= status_code <= 599


class LLMTimeoutError(LLMTransientError):
    """Request timed out."""


class LLMNetworkError(LLMTransientError):
    """Connection could not be established or was dropped."""


class LLMAuthError(LLMError):
    """Authentication failed (401/403): API key invalid or forbidden."""


class LLMInvalidRequestError(LLMError):
    """Provider rejected the request body (400/422)."""


class LLMModelNotFoundError(LLMError):
    """Model doesn't exist (404)."""


class LLMModelNotSupportedError(LLMError):
    """Model exists but cannot serve this request (tools, schema, ...)."""


class LLMEmptyResponseError(LLMError):
    """Provider answered with nothing usable."""


class LLMDecodingError(LLMError):
    """Response (or final output) could not be decoded."""


class LLMContentFilterError(LLMError):
    """Content policy violation: request was blocked."""


# ---------------------------------------------------------------------------
# Agent errors (fatal to a run)
# ---------------------------------------------------------------------------


class AgentError(Exception):
    """Base for errors that end an agent run."""


class MaxStepsExceededError(AgentError):
    """The loop tried to issue more requests than ``max_steps`` allows."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Agent exceeded maximum steps limit ({limit})")
        self.limit = limit


class OutputDecodingFailedError(AgentError):
    """The final output never decoded against the output schema."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Failed to decode output: {cause}")
        self.cause = cause


class InvalidStateError(AgentError):
    """The loop was driven in a way its state machine does not allow."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Invalid agent state: {detail}")
        self.detail = detail


class ToolNotFoundError(AgentError):
    """A tool call named a tool that is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}")
        self.name = name


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def _status_code(error: Exception) -> int | None:
    code = getattr(error, "status_code", None)
    if isinstance(code, int):
        return code
    response = getattr(error, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def classify_error(error: Exception) -> type[LLMError]:
    """Classify any exception into an LLMError subtype.

    Uses litellm exception types when available, falls back to string matching.
    """
    import litellm as _lt

    # Timeout subclasses APIConnectionError in the openai hierarchy; check it first.
    checks: tuple[tuple[tuple[str, ...], type[LLMError]], ...] = (
        (("Timeout",), LLMTimeoutError),
        (("AuthenticationError", "PermissionDeniedError"), LLMAuthError),
        (("NotFoundError",), LLMModelNotFoundError),
        (("ContentPolicyViolationError",), LLMContentFilterError),
        (("RateLimitError",), LLMRateLimitError),
        (
            ("InternalServerError", "ServiceUnavailableError", "BadGatewayError"),
            LLMServerError,
        ),
        (("APIConnectionError",), LLMNetworkError),
        (("UnsupportedParamsError",), LLMModelNotSupportedError),
        (("BadRequestError", "UnprocessableEntityError"), LLMInvalidRequestError),
    )
    for names, cls in checks:
        types = _litellm_error_types(_lt, names)
        if types and isinstance(error, types):
            return cls

    if isinstance(error, (TimeoutError,)):
        return LLMTimeoutError
    if isinstance(error, ConnectionError):
        return LLMNetworkError

    code = _status_code(error)
    if code is not None:
        if code == 429:
            return LLMRateLimitError
        if code in (401, 403):
            return LLMAuthError
        if code == 404:
            return LLMModelNotFoundError
        if 500 <= code <= 599:
            return LLMServerError
        if code in (400, 422):
            return LLMInvalidRequestError

    # Fallback: string pattern matching
    error_str = str(error).lower()

    if "rate" in error_str and "limit" in error_str:
        return LLMRateLimitError
    if "401" in error_str or "unauthorized" in error_str or "authentication" in error_str:
        return LLMAuthError
    if "403" in error_str or "forbidden" in error_str:
        return LLMAuthError
    if "model" in error_str and ("not found" in error_str or "does not exist" in error_str):
        return LLMModelNotFoundError
    if "not supported" in error_str:
        return LLMModelNotSupportedError
    if "content" in error_str and ("policy" in error_str or "filter" in error_str or "blocked" in error_str):
        return LLMContentFilterError
    if "timeout" in error_str or "timed out" in error_str:
        return LLMTimeoutError
    if any(p in error_str for p in ("500", "502", "503", "529", "server error", "overloaded")):
        return LLMServerError
    if "connection" in error_str or "network" in error_str:
        return LLMNetworkError

    return LLMError


def wrap_error(error: Exception) -> LLMError:
    """Wrap an exception in the appropriate LLMError subclass.

    If the error is already an LLMError, returns it unchanged.
    """
    if isinstance(error, LLMError):
        return error
    cls = classify_error(error)
    message = str(error) or type(error).__name__
    if cls is LLMServerError:
        return LLMServerError(message, status_code=_status_code(error) or 500, original=error)
    return cls(message, original=error)
