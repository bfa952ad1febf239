"""Agent loop driver.

``AgentLoopRunner`` advances one conversation run a step at a time. Each
call to :meth:`AgentLoopRunner.next_step` either drains a queued tool event
or performs one full model turn:

    1. bump the step counter (bounded by ``max_steps``)
    2. send one request, shaped by the current phase, through the retry layer
    3. record the response and ask the termination policy what to do
    4. execute tools, surface thinking, decode output, or stop

Output is acquired in two phases. While tools are registered, requests
carry tool definitions but no output schema. Once the model signals it is
done, the runner switches to the final-output phase: tools are removed, the
schema is attached, and the reply is decoded (with one retry on a decode
failure).
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from structured_agent.config import RetryConfiguration
from structured_agent.errors import (
    InvalidStateError,
    LLMDecodingError,
    MaxStepsExceededError,
    OutputDecodingFailedError,
)
from structured_agent.messages import (
    AgentStep,
    FinalResponseStep,
    LLMResponse,
    ThinkingStep,
    ToolCallInfo,
    ToolCallStep,
    ToolResultInfo,
    ToolResultStep,
)
from structured_agent.provider import LLMRequest, Provider
from structured_agent.retry import RetryCancelledError, RetryEventHandler, RetryPolicy, send_with_retry
from structured_agent.state import LoopStateStore
from structured_agent.structured import OutputDecoder
from structured_agent.termination import (
    Completed,
    ContinueWithThinking,
    ContinueWithTools,
    TerminateImmediately,
    TerminateWithOutput,
    TerminationDecision,
    TerminationPolicy,
    TerminationReason,
    make_default_policy,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DECODE_RETRIES: int = 2
"""Final-output decode attempts before the run fails."""


class ExecutionPhase(str, enum.Enum):
    """Phase of the two-phase output contract, as seen from outside."""

    TOOL_USE = "tool_use"
    FINAL_OUTPUT = "final_output"
    COMPLETED = "completed"


@dataclass(frozen=True)
class LoopPhase:
    """Internal phase. ``retry_count`` only moves inside ``FINAL_OUTPUT``."""

    kind: ExecutionPhase
    retry_count: int = 0

    @classmethod
    def tool_use(cls) -> LoopPhase:
        return cls(ExecutionPhase.TOOL_USE)

    @classmethod
    def final_output(cls, retry_count: int = 0) -> LoopPhase:
        return cls(ExecutionPhase.FINAL_OUTPUT, retry_count)

    @classmethod
    def completed(cls) -> LoopPhase:
        return cls(ExecutionPhase.COMPLETED)


class AgentLoopRunner:
    """Stateful engine behind :class:`~structured_agent.stream.AgentStepStream`.

    Args:
        provider: Sends one request, returns one normalized response.
        decoder: Output schema and decoder for the final response.
        state: Loop state store for this run; not shared with other runs.
        policy: Termination policy. Defaults to the standard policy with
            duplicate/quota detection from ``state.configuration``.
        retry: Retry configuration or policy for every outbound request.
        on_retry: Called before each backoff sleep.
        sleep: Awaitable sleep used between retries.
        max_decode_retries: Final-output decode attempts before failing.
    """

    def __init__(
        self,
        provider: Provider,
        decoder: OutputDecoder[Any],
        state: LoopStateStore,
        *,
        policy: TerminationPolicy | None = None,
        retry: RetryConfiguration | RetryPolicy | None = None,
        on_retry: RetryEventHandler | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_decode_retries: int = DEFAULT_MAX_DECODE_RETRIES,
    ) -> None:
        self.provider = provider
        self.decoder = decoder
        self.state = state
        self.policy = policy if policy is not None else make_default_policy(state.configuration)
        if retry is None:
            retry = RetryConfiguration.default()
        self.retry_policy: RetryPolicy = retry.policy() if isinstance(retry, RetryConfiguration) else retry
        self.on_retry = on_retry
        self._sleep = sleep
        self.max_decode_retries = max_decode_retries

        self._phase = LoopPhase.tool_use()
        self._pending: deque[AgentStep] = deque()
        self._cancelled = False
        self._in_flight = False
        self.termination_reason: TerminationReason | None = None

    # -- public interface ----------------------------------------------------

    @property
    def phase(self) -> LoopPhase:
        return self._phase

    def current_phase(self) -> ExecutionPhase:
        return self._phase.kind

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop the run. Work already in flight finishes but its result is dropped."""
        if not self._cancelled:
            logger.info("Agent loop cancelled at step %d", self.state.current_step)
        self._cancelled = True
        self._pending.clear()
        self._phase = LoopPhase.completed()
        self.state.mark_completed()

    async def next_step(self) -> AgentStep | None:
        """Produce the next step, or ``None`` once the run is over.

        Raises:
            InvalidStateError: Another ``next_step()`` call is still running.
            MaxStepsExceededError: The run would need more than ``max_steps``
                requests.
            OutputDecodingFailedError: The final output never decoded.
            LLMError: A provider failure that survived retrying.
        """
        if self._in_flight:
            raise InvalidStateError("next_step() is already in progress for this loop")
        self._in_flight = True
        try:
            return await self._advance()
        finally:
            self._in_flight = False

    # -- state machine -------------------------------------------------------

    async def _advance(self) -> AgentStep | None:
        if self._cancelled:
            return None
        if self._pending:
            return self._pending.popleft()
        if self._phase.kind is ExecutionPhase.COMPLETED:
            return None
        if self.state.is_at_step_limit:
            raise MaxStepsExceededError(self.state.max_steps)

        step = self.state.increment_step()
        try:
            response = await self.send_request()
        except RetryCancelledError:
            logger.debug("Retries for step %d abandoned after cancellation", step)
            return None
        if self._cancelled:
            logger.debug("Discarding response for step %d after cancellation", step)
            return None

        self.state.append_assistant_response(response)
        decision = self.policy.evaluate(response, self.state)
        logger.debug("Step %d: stop_reason=%s decision=%s", step, response.stop_reason, type(decision).__name__)
        return await self._handle_decision(decision, response)

    async def _handle_decision(
        self,
        decision: TerminationDecision,
        response: LLMResponse,
    ) -> AgentStep | None:
        if isinstance(decision, ContinueWithTools):
            return await self._process_tool_calls(list(decision.calls))
        if isinstance(decision, ContinueWithThinking):
            return ThinkingStep(response)
        if isinstance(decision, TerminateWithOutput):
            return self._decode_final_output(decision.text, response)
        if isinstance(decision, TerminateImmediately):
            return self._terminate(decision.reason)
        raise InvalidStateError(f"unknown termination decision {decision!r}")

    async def _process_tool_calls(self, calls: list[ToolCallInfo]) -> AgentStep | None:
        if not self.state.configuration.auto_execute_tools:
            # Manual mode: the caller executes tools from state.last_response.
            self._complete()
            return None

        results: list[ToolResultInfo] = []
        for call in calls:
            self.state.record_tool_call(call)
            self._pending.append(ToolCallStep(call))
            result = await self._execute_tool(call)
            if self._cancelled:
                return None
            results.append(result)
            self._pending.append(ToolResultStep(result))

        self.state.append_tool_results(results)
        return self._pending.popleft()

    async def _execute_tool(self, call: ToolCallInfo) -> ToolResultInfo:
        try:
            output = await self.state.tools.execute(call.name, call.input)
        except Exception as e:
            logger.warning("Tool %s failed: %s", call.name, e)
            return ToolResultInfo(
                tool_call_id=call.id,
                name=call.name,
                content=f"Error: {e}",
                is_error=True,
            )
        return ToolResultInfo(
            tool_call_id=call.id,
            name=call.name,
            content=output.content,
            is_error=output.is_error,
        )

    def _decode_final_output(self, text: str, response: LLMResponse) -> AgentStep | None:
        kind = self._phase.kind

        if kind is ExecutionPhase.TOOL_USE:
            if self.state.tools:
                # Text while tools are on offer may be narration, not an answer.
                self._enter_final_output(0)
                return ThinkingStep(response)
            try:
                return self._decode_and_complete(text)
            except LLMDecodingError as e:
                self._complete()
                raise OutputDecodingFailedError(e) from e

        if kind is ExecutionPhase.FINAL_OUTPUT:
            try:
                return self._decode_and_complete(text)
            except LLMDecodingError as e:
                retry_count = self._phase.retry_count + 1
                if retry_count >= self.max_decode_retries:
                    self._complete()
                    raise OutputDecodingFailedError(e) from e
                logger.info(
                    "Final output decode failed (%d/%d): %s",
                    retry_count,
                    self.max_decode_retries,
                    e,
                )
                self._enter_final_output(retry_count)
                return ThinkingStep(response)

        return None

    def _decode_and_complete(self, text: str) -> AgentStep:
        output = self.decoder.decode(text)
        self._complete()
        return FinalResponseStep(output)

    def _enter_final_output(self, retry_count: int) -> None:
        if self._phase.kind is ExecutionPhase.TOOL_USE:
            logger.info("Switching to final output phase at step %d", self.state.current_step)
        self._phase = LoopPhase.final_output(retry_count)
        self.state.append_final_output_request()

    def _terminate(self, reason: TerminationReason) -> None:
        self.termination_reason = reason
        self._complete()
        if isinstance(reason, Completed):
            logger.debug("Agent loop completed without output")
        else:
            logger.warning("Agent loop stopped: %s", reason)
        return None

    def _complete(self) -> None:
        self._phase = LoopPhase.completed()
        self.state.mark_completed()

    # -- requests ------------------------------------------------------------

    def build_request(self) -> LLMRequest:
        """Shape the next request for the current phase.

        Raises:
            InvalidStateError: The loop is already completed.
        """
        kind = self._phase.kind
        if kind is ExecutionPhase.COMPLETED:
            raise InvalidStateError("send_request called in completed phase")

        schema_name = getattr(self.decoder, "name", "output")
        base = dict(
            messages=self.state.messages,
            system_prompt=self.state.system_prompt,
            schema_name=schema_name,
        )
        if kind is ExecutionPhase.TOOL_USE and self.state.tools:
            return LLMRequest(tools=self.state.tools.definitions(), tool_choice="auto", **base)
        return LLMRequest(response_schema=self.decoder.json_schema, **base)

    async def send_request(self) -> LLMResponse:
        request = self.build_request()
        logger.debug(
            "Sending step %d: phase=%s tools=%d schema=%s",
            self.state.current_step,
            self._phase.kind.value,
            len(request.tools or []),
            request.response_schema is not None,
        )
        return await send_with_retry(
            lambda: self.provider.send(request),
            policy=self.retry_policy,
            on_retry=self.on_retry,
            sleep=self._sleep,
            operation=f"agent step {self.state.current_step}",
            is_cancelled=lambda: self._cancelled,
        )
