"""Conversation data: messages, normalized model responses, agent steps.

Everything here is immutable. The loop state store owns the message list;
the provider adapter produces ``LLMResponse``; the step stream yields the
``AgentStep`` variants.
"""

from __future__ import annotations

import enum
import json as _json
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar, Union

OutputT = TypeVar("OutputT")


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ToolUsePart:
    id: str
    name: str
    input: bytes


@dataclass(frozen=True)
class ToolResultPart:
    call_id: str
    name: str
    content: str
    is_error: bool = False


ContentPart = Union[TextPart, ToolUsePart, ToolResultPart]
Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Message:
    """One conversation turn: a role and its ordered content parts."""

    role: Role
    contents: tuple[ContentPart, ...]

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", contents=(TextPart(text),))

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role="assistant", contents=(TextPart(text),))

    @classmethod
    def tool_results(cls, results: list[ToolResultInfo]) -> Message:
        """Bundle a whole batch of results into a single user turn."""
        return cls(
            role="user",
            contents=tuple(
                ToolResultPart(
                    call_id=r.tool_call_id,
                    name=r.name,
                    content=r.content,
                    is_error=r.is_error,
                )
                for r in results
            ),
        )

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.contents if isinstance(p, TextPart))

    @property
    def has_tool_use(self) -> bool:
        return any(isinstance(p, ToolUsePart) for p in self.contents)

    @property
    def has_tool_result(self) -> bool:
        return any(isinstance(p, ToolResultPart) for p in self.contents)


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCallInfo:
    """A single tool invocation requested by the model."""

    id: str
    name: str
    input: bytes = b"{}"

    def decode_input(self) -> dict[str, Any]:
        """Parse the JSON input payload. Empty input decodes to ``{}``."""
        if not self.input.strip():
            return {}
        value = _json.loads(self.input)
        if not isinstance(value, dict):
            raise ValueError(f"Tool input for {self.name!r} is not a JSON object")
        return value


@dataclass(frozen=True)
class ToolResultInfo:
    """Outcome of one tool call, paired with it by ``tool_call_id``."""

    tool_call_id: str
    name: str
    content: str
    is_error: bool = False


# ---------------------------------------------------------------------------
# Normalized model response
# ---------------------------------------------------------------------------


class StopReason(str, enum.Enum):
    """Provider-neutral reason a model turn ended."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    TOOL_USE = "tool_use"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: bytes


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class LLMResponse:
    """A model turn after provider-specific vocabulary has been normalized.

    Attributes:
        content: Text and tool-use blocks in the order the model produced them.
        model: Model string the provider reported (or was asked for).
        usage: Token counts for this turn.
        stop_reason: Why the turn ended; ``None`` when the provider gave a
            value with no neutral equivalent.
    """

    content: tuple[ContentBlock, ...]
    model: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: StopReason | None = None

    def tool_calls(self) -> list[ToolCallInfo]:
        return [
            ToolCallInfo(id=b.id, name=b.name, input=b.input)
            for b in self.content
            if isinstance(b, ToolUseBlock)
        ]

    def text_content(self) -> str | None:
        text = "".join(b.text for b in self.content if isinstance(b, TextBlock))
        return text or None


# ---------------------------------------------------------------------------
# Agent steps
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThinkingStep:
    """The model answered with text that did not end the run."""

    response: LLMResponse
    kind: Literal["thinking"] = "thinking"


@dataclass(frozen=True)
class ToolCallStep:
    call: ToolCallInfo
    kind: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True)
class ToolResultStep:
    result: ToolResultInfo
    kind: Literal["tool_result"] = "tool_result"


@dataclass(frozen=True)
class FinalResponseStep(Generic[OutputT]):
    """The decoded structured output. Always the last step of a run."""

    output: OutputT
    kind: Literal["final_response"] = "final_response"


AgentStep = Union[ThinkingStep, ToolCallStep, ToolResultStep, FinalResponseStep[Any]]
