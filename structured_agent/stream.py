"""Pull-based step stream over one agent run.

Steps are produced on demand: nothing is sent to the model until the
consumer asks for the next step, and iteration ends once the run has
completed or been cancelled.

    stream = run_agent("gpt-4o", "Plan my trip", TripPlan, tools=[get_weather])
    async for step in stream:
        if step.kind == "tool_call":
            print("calling", step.call.name)
        elif step.kind == "final_response":
            plan = step.output
"""

from __future__ import annotations

import logging
from typing import Any, Generic, TypeVar

from structured_agent.loop import AgentLoopRunner, ExecutionPhase
from structured_agent.messages import AgentStep, FinalResponseStep, Message
from structured_agent.state import LoopStateStore
from structured_agent.termination import TerminationReason

logger = logging.getLogger(__name__)

OutputT = TypeVar("OutputT")


class AgentStepStream(Generic[OutputT]):
    """Async iterator of :data:`~structured_agent.messages.AgentStep` values.

    Only one consumer may pull at a time; a second concurrent ``pull()``
    raises :class:`~structured_agent.errors.InvalidStateError`.
    """

    def __init__(self, runner: AgentLoopRunner) -> None:
        self._runner = runner

    def __aiter__(self) -> AgentStepStream[OutputT]:
        return self

    async def __anext__(self) -> AgentStep:
        step = await self._runner.next_step()
        if step is None:
            raise StopAsyncIteration
        return step

    async def pull(self) -> AgentStep | None:
        """Next step, or ``None`` when the run is over."""
        return await self._runner.next_step()

    def cancel(self) -> None:
        self._runner.cancel()

    def current_phase(self) -> ExecutionPhase:
        return self._runner.current_phase()

    @property
    def is_cancelled(self) -> bool:
        return self._runner.is_cancelled

    @property
    def termination_reason(self) -> TerminationReason | None:
        """Why the run stopped without output, if it did."""
        return self._runner.termination_reason

    @property
    def state(self) -> LoopStateStore:
        return self._runner.state

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._runner.state.messages

    async def final_output(self) -> OutputT | None:
        """Drain the stream and return the decoded output, if any."""
        output: Any = None
        async for step in self:
            if isinstance(step, FinalResponseStep):
                output = step.output
        if output is None and self.termination_reason is not None:
            logger.info("Agent run ended without output: %s", self.termination_reason)
        return output
