"""Provider boundary: one request in, one normalized response out.

The loop talks to models only through the :class:`Provider` protocol. Any
object with an ``async send(request) -> LLMResponse`` method works; the
shipped implementation is :class:`LiteLLMProvider`, which reaches every
provider litellm supports by changing the model string:

    provider = LiteLLMProvider("anthropic/claude-sonnet-4-5-20250929")
    provider = LiteLLMProvider("gpt-4o", temperature=0)
    provider = LiteLLMProvider("gemini/gemini-2.0-flash")

Provider-native stop reasons are normalized here so that policies never
see them, and failures carry parsed rate-limit headers for the retry layer.
"""

from __future__ import annotations

import json as _json
import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

import litellm

from structured_agent.errors import LLMEmptyResponseError, wrap_error
from structured_agent.messages import (
    ContentBlock,
    LLMResponse,
    Message,
    StopReason,
    TextBlock,
    TextPart,
    TokenUsage,
    ToolResultPart,
    ToolUseBlock,
    ToolUsePart,
)
from structured_agent.rate_limit import extract_rate_limit_info
from structured_agent.retry import RateLimitAwareError

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True

ToolChoice = Literal["auto", "required", "none"]


@dataclass(frozen=True)
class LLMRequest:
    """Everything one model turn needs.

    ``tools`` and ``response_schema`` are never both set by the agent loop:
    providers return unpredictable text when asked for tools and a schema at
    once.
    """

    messages: tuple[Message, ...]
    system_prompt: str | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: ToolChoice | None = None
    response_schema: dict[str, Any] | None = None
    schema_name: str = "output"


@runtime_checkable
class Provider(Protocol):
    async def send(self, request: LLMRequest) -> LLMResponse: ...


# ---------------------------------------------------------------------------
# Stop reason normalization
# ---------------------------------------------------------------------------

_STOP_REASONS: dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "end_turn": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "max_tokens": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "tool_use": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "stop_sequence": StopReason.STOP_SEQUENCE,
}


def normalize_stop_reason(raw: str | None) -> StopReason | None:
    """Map a provider's finish reason onto :class:`StopReason`.

    Case-insensitive, so Gemini's ``STOP``/``MAX_TOKENS`` map as well.
    Unknown values (``content_filter``, ``SAFETY``, ...) become ``None``.
    """
    if not raw:
        return None
    return _STOP_REASONS.get(raw.strip().lower())


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def _decode_arguments(data: bytes) -> str:
    return data.decode("utf-8", errors="replace") or "{}"


def to_openai_messages(messages: tuple[Message, ...] | list[Message], system_prompt: str | None = None) -> list[dict[str, Any]]:
    """Convert conversation history into OpenAI chat format.

    A user message bundling tool results expands into one ``tool`` message
    per result, in order, which keeps provider-side turn-taking intact.
    """
    out: list[dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            tool_calls = [
                {
                    "id": p.id,
                    "type": "function",
                    "function": {"name": p.name, "arguments": _decode_arguments(p.input)},
                }
                for p in message.contents
                if isinstance(p, ToolUsePart)
            ]
            if tool_calls:
                entry["tool_calls"] = tool_calls
            out.append(entry)
            continue

        for part in message.contents:
            if isinstance(part, ToolResultPart):
                content = _json.dumps({"error": part.content}) if part.is_error else part.content
                out.append({"role": "tool", "tool_call_id": part.call_id, "content": content})
        text = "".join(p.text for p in message.contents if isinstance(p, TextPart))
        if text:
            out.append({"role": "user", "content": text})

    return out


def _arguments_bytes(arguments: Any) -> bytes:
    if arguments is None:
        return b"{}"
    if isinstance(arguments, str):
        return arguments.encode("utf-8")
    return _json.dumps(arguments).encode("utf-8")


def from_litellm_response(response: Any, model: str) -> LLMResponse:
    """Build a normalized :class:`LLMResponse` from a litellm ModelResponse."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise LLMEmptyResponseError(f"No choices in response from {model}")
    choice = choices[0]
    message = choice.message

    blocks: list[ContentBlock] = []
    if message.content:
        blocks.append(TextBlock(message.content))
    for tc in getattr(message, "tool_calls", None) or []:
        blocks.append(
            ToolUseBlock(
                id=tc.id,
                name=tc.function.name,
                input=_arguments_bytes(tc.function.arguments),
            )
        )

    usage = getattr(response, "usage", None)
    token_usage = TokenUsage(
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )
    stop_reason = normalize_stop_reason(getattr(choice, "finish_reason", None))

    logger.debug(
        "LLM turn: model=%s tokens=%d finish=%s blocks=%d",
        model,
        token_usage.total_tokens,
        getattr(choice, "finish_reason", None),
        len(blocks),
    )
    return LLMResponse(
        content=tuple(blocks),
        model=getattr(response, "model", None) or model,
        usage=token_usage,
        stop_reason=stop_reason,
    )


def _response_headers(error: Exception) -> Any:
    headers = getattr(error, "litellm_response_headers", None)
    if headers:
        return headers
    response = getattr(error, "response", None)
    return getattr(response, "headers", None)


# ---------------------------------------------------------------------------
# litellm provider
# ---------------------------------------------------------------------------


class LiteLLMProvider:
    """:class:`Provider` backed by ``litellm.acompletion``.

    Args:
        model: Any litellm model string.
        timeout: Request timeout in seconds.
        api_base: Optional API base URL.
        **kwargs: Extra params passed through to litellm
            (e.g. temperature, max_tokens).
    """

    def __init__(
        self,
        model: str,
        *,
        timeout: int = 60,
        api_base: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.api_base = api_base
        self.kwargs = kwargs

    def build_call_kwargs(self, request: LLMRequest) -> dict[str, Any]:
        # Retries are ours; litellm's num_retries would double them.
        call_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(request.messages, request.system_prompt),
            "timeout": self.timeout,
            **self.kwargs,
        }
        if self.api_base is not None:
            call_kwargs["api_base"] = self.api_base
        if request.tools:
            call_kwargs["tools"] = request.tools
            if request.tool_choice is not None:
                call_kwargs["tool_choice"] = request.tool_choice
        if request.response_schema is not None:
            call_kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": request.schema_name,
                    "schema": request.response_schema,
                },
            }
        return call_kwargs

    async def send(self, request: LLMRequest) -> LLMResponse:
        call_kwargs = self.build_call_kwargs(request)
        try:
            response = await litellm.acompletion(**call_kwargs)
        except Exception as e:
            error = wrap_error(e)
            headers = _response_headers(e)
            raise RateLimitAwareError(
                error,
                extract_rate_limit_info(self.model, headers),
                status_code=getattr(e, "status_code", None),
            ) from e
        return from_litellm_response(response, self.model)
