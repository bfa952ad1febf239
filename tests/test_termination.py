"""Tests for structured_agent.termination: decision tables and decorators."""

from __future__ import annotations

import pytest

from structured_agent.config import AgentConfiguration
from structured_agent.messages import (
    LLMResponse,
    StopReason,
    TextBlock,
    ToolCallInfo,
    ToolUseBlock,
)
from structured_agent.state import LoopStateStore
from structured_agent.termination import (
    Completed,
    CompositeTerminationPolicy,
    ContinueWithThinking,
    ContinueWithTools,
    DuplicateDetectionPolicy,
    DuplicateToolCallDetected,
    EmptyResponse,
    MaxStepsReached,
    MaxToolCallsPerToolReached,
    StandardTerminationPolicy,
    TerminateImmediately,
    TerminateWithOutput,
    UnexpectedStopReason,
    make_default_policy,
)


def _context(max_steps: int = 10) -> LoopStateStore:
    return LoopStateStore.from_prompt("hi", AgentConfiguration(max_steps=max_steps))


def _response(text: str | None = None, calls=(), stop: StopReason | None = None) -> LLMResponse:
    blocks = []
    if text is not None:
        blocks.append(TextBlock(text))
    for call_id, name, payload in calls:
        blocks.append(ToolUseBlock(id=call_id, name=name, input=payload))
    return LLMResponse(content=tuple(blocks), stop_reason=stop)


SEARCH = ("c1", "search", b'{"q": "x"}')


class _Fixed:
    def __init__(self, decision):
        self.decision = decision
        self.calls = 0

    def evaluate(self, response, context):
        self.calls += 1
        return self.decision


# ---------------------------------------------------------------------------
# StandardTerminationPolicy
# ---------------------------------------------------------------------------


class TestStandardPolicy:
    policy = StandardTerminationPolicy()

    def test_step_limit_beats_everything(self):
        ctx = _context(max_steps=1)
        ctx.increment_step()
        decision = self.policy.evaluate(_response(calls=[SEARCH], stop=StopReason.TOOL_USE), ctx)
        assert decision == TerminateImmediately(MaxStepsReached(1))

    def test_tool_use_with_calls(self):
        decision = self.policy.evaluate(_response(calls=[SEARCH], stop=StopReason.TOOL_USE), _context())
        assert decision == ContinueWithTools((ToolCallInfo("c1", "search", b'{"q": "x"}'),))

    def test_tool_use_without_calls(self):
        decision = self.policy.evaluate(_response(text="hm", stop=StopReason.TOOL_USE), _context())
        assert isinstance(decision, TerminateImmediately)
        assert isinstance(decision.reason, UnexpectedStopReason)

    def test_end_turn_with_calls_prefers_tools(self):
        decision = self.policy.evaluate(
            _response(text="calling", calls=[SEARCH], stop=StopReason.END_TURN), _context()
        )
        assert isinstance(decision, ContinueWithTools)

    def test_end_turn_with_text(self):
        decision = self.policy.evaluate(_response(text='{"a": 1}', stop=StopReason.END_TURN), _context())
        assert decision == TerminateWithOutput('{"a": 1}')

    def test_end_turn_empty(self):
        decision = self.policy.evaluate(_response(stop=StopReason.END_TURN), _context())
        assert decision == TerminateImmediately(Completed())

    def test_max_tokens_with_text(self):
        decision = self.policy.evaluate(_response(text="partial", stop=StopReason.MAX_TOKENS), _context())
        assert decision == TerminateWithOutput("partial")

    def test_max_tokens_without_text(self):
        decision = self.policy.evaluate(_response(stop=StopReason.MAX_TOKENS), _context())
        assert decision == TerminateImmediately(UnexpectedStopReason("max_tokens"))

    def test_stop_sequence(self):
        assert self.policy.evaluate(
            _response(text="x", stop=StopReason.STOP_SEQUENCE), _context()
        ) == TerminateWithOutput("x")
        assert self.policy.evaluate(
            _response(stop=StopReason.STOP_SEQUENCE), _context()
        ) == TerminateImmediately(Completed())

    def test_missing_stop_reason_prefers_tools(self):
        decision = self.policy.evaluate(_response(text="x", calls=[SEARCH]), _context())
        assert isinstance(decision, ContinueWithTools)

    def test_missing_stop_reason_with_text(self):
        assert self.policy.evaluate(_response(text="x"), _context()) == TerminateWithOutput("x")

    def test_missing_stop_reason_empty(self):
        assert self.policy.evaluate(_response(), _context()) == TerminateImmediately(EmptyResponse())


# ---------------------------------------------------------------------------
# DuplicateDetectionPolicy
# ---------------------------------------------------------------------------


class TestDuplicateDetection:
    def test_passes_through_non_tool_decisions(self):
        policy = DuplicateDetectionPolicy()
        decision = policy.evaluate(_response(text="done", stop=StopReason.END_TURN), _context())
        assert decision == TerminateWithOutput("done")

    def test_allows_until_duplicate_limit(self):
        ctx = _context()
        policy = DuplicateDetectionPolicy(max_duplicates=2)
        response = _response(calls=[SEARCH], stop=StopReason.TOOL_USE)
        call = ToolCallInfo(*SEARCH)

        assert isinstance(policy.evaluate(response, ctx), ContinueWithTools)
        ctx.record_tool_call(call)
        assert isinstance(policy.evaluate(response, ctx), ContinueWithTools)
        ctx.record_tool_call(call)
        assert policy.evaluate(response, ctx) == TerminateImmediately(DuplicateToolCallDetected("search", 3))

    def test_different_input_is_not_duplicate(self):
        ctx = _context()
        policy = DuplicateDetectionPolicy(max_duplicates=1)
        ctx.record_tool_call(ToolCallInfo("c0", "search", b'{"q": "other"}'))
        decision = policy.evaluate(_response(calls=[SEARCH], stop=StopReason.TOOL_USE), ctx)
        assert isinstance(decision, ContinueWithTools)

    def test_per_tool_quota(self):
        ctx = _context()
        policy = DuplicateDetectionPolicy(max_duplicates=10, max_tool_calls_per_tool=3)
        for i in range(3):
            ctx.record_tool_call(ToolCallInfo(f"c{i}", "search", f'{{"q": {i}}}'.encode()))
        decision = policy.evaluate(_response(calls=[SEARCH], stop=StopReason.TOOL_USE), ctx)
        assert decision == TerminateImmediately(MaxToolCallsPerToolReached("search", 4))

    def test_quota_disabled(self):
        ctx = _context()
        policy = DuplicateDetectionPolicy(max_duplicates=10, max_tool_calls_per_tool=None)
        for i in range(8):
            ctx.record_tool_call(ToolCallInfo(f"c{i}", "search", f'{{"q": {i}}}'.encode()))
        decision = policy.evaluate(_response(calls=[SEARCH], stop=StopReason.TOOL_USE), ctx)
        assert isinstance(decision, ContinueWithTools)

    def test_any_call_in_batch_triggers(self):
        ctx = _context()
        policy = DuplicateDetectionPolicy(max_duplicates=1)
        ctx.record_tool_call(ToolCallInfo("c0", "fetch", b"{}"))
        response = _response(calls=[SEARCH, ("c2", "fetch", b"{}")], stop=StopReason.TOOL_USE)
        assert policy.evaluate(response, ctx) == TerminateImmediately(DuplicateToolCallDetected("fetch", 2))

    def test_factory_uses_configuration(self):
        policy = make_default_policy(AgentConfiguration(max_duplicate_tool_calls=4, max_tool_calls_per_tool=None))
        assert isinstance(policy, DuplicateDetectionPolicy)
        assert policy.max_duplicates == 4
        assert policy.max_tool_calls_per_tool is None
        assert isinstance(policy.base_policy, StandardTerminationPolicy)


# ---------------------------------------------------------------------------
# CompositeTerminationPolicy
# ---------------------------------------------------------------------------


class TestComposite:
    def test_first_terminating_wins(self):
        first = _Fixed(ContinueWithThinking())
        second = _Fixed(TerminateImmediately(EmptyResponse()))
        third = _Fixed(TerminateWithOutput("x"))
        policy = CompositeTerminationPolicy([first, second, third])
        assert policy.evaluate(_response(), _context()) == TerminateImmediately(EmptyResponse())
        assert third.calls == 0

    def test_last_continue_wins(self):
        policy = CompositeTerminationPolicy([
            _Fixed(ContinueWithThinking()),
            _Fixed(ContinueWithTools(())),
        ])
        assert policy.evaluate(_response(), _context()) == ContinueWithTools(())

    def test_empty_composite_completes(self):
        policy = CompositeTerminationPolicy([])
        assert policy.evaluate(_response(), _context()) == TerminateImmediately(Completed())

    @pytest.mark.parametrize("decision", [TerminateWithOutput("a"), TerminateImmediately(Completed())])
    def test_single_policy_passthrough(self, decision):
        assert CompositeTerminationPolicy([_Fixed(decision)]).evaluate(_response(), _context()) == decision
