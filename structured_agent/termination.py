"""Termination policies: decide what the loop does after each model turn.

A policy looks at one normalized ``LLMResponse`` plus read-only loop state
and returns a ``TerminationDecision``:

- ``ContinueWithTools(calls)``: execute the calls and ask the model again
- ``ContinueWithThinking()``: surface the turn and ask again
- ``TerminateWithOutput(text)``: try to decode *text* as the final output
- ``TerminateImmediately(reason)``: stop cleanly, no output

Policies compose by wrapping: ``DuplicateDetectionPolicy`` adds duplicate
and per-tool quotas on top of any base policy, ``CompositeTerminationPolicy``
chains several and takes the first that wants to stop.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, Union, runtime_checkable

from structured_agent.config import AgentConfiguration
from structured_agent.messages import LLMResponse, StopReason, ToolCallInfo
from structured_agent.state import hash_tool_input


# ---------------------------------------------------------------------------
# Reasons
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Completed:
    """The model finished with nothing to decode."""


@dataclass(frozen=True)
class MaxStepsReached:
    limit: int


@dataclass(frozen=True)
class DuplicateToolCallDetected:
    name: str
    count: int


@dataclass(frozen=True)
class MaxToolCallsPerToolReached:
    name: str
    count: int


@dataclass(frozen=True)
class UnexpectedStopReason:
    detail: str | None = None


@dataclass(frozen=True)
class EmptyResponse:
    """No stop reason, no tool calls, no text."""


TerminationReason = Union[
    Completed,
    MaxStepsReached,
    DuplicateToolCallDetected,
    MaxToolCallsPerToolReached,
    UnexpectedStopReason,
    EmptyResponse,
]


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContinueWithTools:
    calls: tuple[ToolCallInfo, ...]


@dataclass(frozen=True)
class ContinueWithThinking:
    pass


@dataclass(frozen=True)
class TerminateWithOutput:
    text: str


@dataclass(frozen=True)
class TerminateImmediately:
    reason: TerminationReason


TerminationDecision = Union[
    ContinueWithTools,
    ContinueWithThinking,
    TerminateWithOutput,
    TerminateImmediately,
]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class LoopContext(Protocol):
    """Read-only view of loop state that policies may consult."""

    @property
    def max_steps(self) -> int: ...

    @property
    def is_at_step_limit(self) -> bool: ...

    def count_tool_calls(self, name: str) -> int: ...

    def count_duplicate_tool_calls(self, name: str, input_hash: str) -> int: ...


@runtime_checkable
class TerminationPolicy(Protocol):
    def evaluate(self, response: LLMResponse, context: LoopContext) -> TerminationDecision: ...


# ---------------------------------------------------------------------------
# Standard policy
# ---------------------------------------------------------------------------


class StandardTerminationPolicy:
    """Decide from the stop reason, with tool calls taking priority over text.

    Some providers report a plain end of turn even when the turn carries a
    function call, so ``END_TURN`` and a missing stop reason both check for
    tool calls before anything else.
    """

    def evaluate(self, response: LLMResponse, context: LoopContext) -> TerminationDecision:
        # A step-limited turn must never be allowed to request more tools.
        if context.is_at_step_limit:
            return TerminateImmediately(MaxStepsReached(context.max_steps))

        stop_reason = response.stop_reason
        calls = tuple(response.tool_calls())
        text = response.text_content()

        if stop_reason is StopReason.TOOL_USE:
            if not calls:
                return TerminateImmediately(UnexpectedStopReason("tool_use without tool calls"))
            return ContinueWithTools(calls)

        if stop_reason is StopReason.END_TURN:
            if calls:
                return ContinueWithTools(calls)
            if text:
                return TerminateWithOutput(text)
            return TerminateImmediately(Completed())

        if stop_reason is StopReason.MAX_TOKENS:
            if text:
                return TerminateWithOutput(text)
            return TerminateImmediately(UnexpectedStopReason("max_tokens"))

        if stop_reason is StopReason.STOP_SEQUENCE:
            if text:
                return TerminateWithOutput(text)
            return TerminateImmediately(Completed())

        if calls:
            return ContinueWithTools(calls)
        if text:
            return TerminateWithOutput(text)
        return TerminateImmediately(EmptyResponse())


# ---------------------------------------------------------------------------
# Decorators
# ---------------------------------------------------------------------------


class DuplicateDetectionPolicy:
    """Wrap *base_policy* with duplicate-call and per-tool quotas.

    Args:
        base_policy: Policy whose decision is checked.
        max_duplicates: Executions allowed for one tool with identical input.
        max_tool_calls_per_tool: Executions allowed for one tool with any
            input; ``None`` for no per-tool limit.
    """

    def __init__(
        self,
        base_policy: TerminationPolicy | None = None,
        max_duplicates: int = 2,
        max_tool_calls_per_tool: int | None = 5,
    ) -> None:
        self.base_policy = base_policy if base_policy is not None else StandardTerminationPolicy()
        self.max_duplicates = max_duplicates
        self.max_tool_calls_per_tool = max_tool_calls_per_tool

    def evaluate(self, response: LLMResponse, context: LoopContext) -> TerminationDecision:
        decision = self.base_policy.evaluate(response, context)
        if not isinstance(decision, ContinueWithTools):
            return decision

        for call in decision.calls:
            if self.max_tool_calls_per_tool is not None:
                total = context.count_tool_calls(call.name)
                if total >= self.max_tool_calls_per_tool:
                    return TerminateImmediately(MaxToolCallsPerToolReached(call.name, total + 1))

            duplicates = context.count_duplicate_tool_calls(call.name, hash_tool_input(call.input))
            if duplicates >= self.max_duplicates:
                return TerminateImmediately(DuplicateToolCallDetected(call.name, duplicates + 1))

        return decision


class CompositeTerminationPolicy:
    """Adopt the first terminating decision among *policies*.

    When every policy wants to continue, the last policy's decision wins.
    """

    def __init__(self, policies: Sequence[TerminationPolicy]) -> None:
        self.policies = list(policies)

    def evaluate(self, response: LLMResponse, context: LoopContext) -> TerminationDecision:
        last: TerminationDecision | None = None
        for policy in self.policies:
            last = policy.evaluate(response, context)
            if isinstance(last, (TerminateWithOutput, TerminateImmediately)):
                return last
        if last is None:
            return TerminateImmediately(Completed())
        return last


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def make_default_policy(configuration: AgentConfiguration | None = None) -> TerminationPolicy:
    """Standard policy with duplicate and quota detection from *configuration*."""
    config = configuration or AgentConfiguration()
    return DuplicateDetectionPolicy(
        base_policy=StandardTerminationPolicy(),
        max_duplicates=config.max_duplicate_tool_calls,
        max_tool_calls_per_tool=config.max_tool_calls_per_tool,
    )


def make_standard_policy() -> TerminationPolicy:
    return StandardTerminationPolicy()
