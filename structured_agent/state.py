"""Per-run loop state: message history, step counter, tool-call ledger.

One ``LoopStateStore`` belongs to exactly one agent run. Every mutation takes
the store's lock, so a reader never sees a half-applied change, and the
ledger is append-only: duplicate and quota checks always see full history.
"""

from __future__ import annotations

import hashlib
import json as _json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable

from structured_agent.config import AgentConfiguration
from structured_agent.errors import MaxStepsExceededError
from structured_agent.messages import (
    LLMResponse,
    Message,
    TextBlock,
    TextPart,
    ToolCallInfo,
    ToolResultInfo,
    ToolUsePart,
)
from structured_agent.tools import ToolSet

logger = logging.getLogger(__name__)

FINAL_OUTPUT_REQUEST = (
    "Based on the information gathered so far, respond now with only a JSON object "
    "that matches the required output schema. Do not call any tools and do not add "
    "any text outside the JSON object."
)


def hash_tool_input(input: bytes) -> str:
    """Stable hash of a tool-call payload.

    JSON payloads are canonicalized first, so key order and whitespace do
    not make two identical calls look different.
    """
    try:
        payload = _json.loads(input) if input.strip() else {}
        raw = _json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
        data = raw.encode("utf-8")
    except (_json.JSONDecodeError, UnicodeDecodeError):
        data = bytes(input)
    return "sha256:" + hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class ToolCallRecord:
    """Ledger entry for one executed tool call."""

    name: str
    input_hash: str
    timestamp: float = field(default_factory=time.time, compare=False)

    @classmethod
    def from_call(cls, call: ToolCallInfo) -> ToolCallRecord:
        return cls(name=call.name, input_hash=hash_tool_input(call.input))


@dataclass(frozen=True)
class LoopStateSnapshot:
    current_step: int
    max_steps: int
    tool_call_history: tuple[ToolCallRecord, ...]

    @property
    def remaining_steps(self) -> int:
        return max(0, self.max_steps - self.current_step)

    @property
    def is_at_limit(self) -> bool:
        return self.current_step >= self.max_steps


class LoopStateStore:
    """Owns everything one conversation run mutates.

    Args:
        configuration: Bounds for the run.
        tools: Tool registry offered to the model.
        messages: Initial conversation history.
        system_prompt: Optional system prompt sent with every request.
    """

    def __init__(
        self,
        configuration: AgentConfiguration,
        tools: ToolSet | None = None,
        messages: Iterable[Message] = (),
        system_prompt: str | None = None,
    ) -> None:
        self.configuration = configuration
        self.tools = tools if tools is not None else ToolSet()
        self.system_prompt = system_prompt
        self._messages: list[Message] = list(messages)
        self._ledger: list[ToolCallRecord] = []
        self._current_step = 0
        self._completed = False
        self._last_response: LLMResponse | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_prompt(
        cls,
        prompt: str,
        configuration: AgentConfiguration,
        tools: ToolSet | None = None,
        system_prompt: str | None = None,
    ) -> LoopStateStore:
        return cls(configuration, tools, [Message.user(prompt)], system_prompt)

    # -- reads ---------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        with self._lock:
            return tuple(self._messages)

    @property
    def current_step(self) -> int:
        return self._current_step

    @property
    def max_steps(self) -> int:
        return self.configuration.max_steps

    @property
    def is_at_step_limit(self) -> bool:
        return self._current_step >= self.configuration.max_steps

    @property
    def is_completed(self) -> bool:
        return self._completed

    @property
    def last_response(self) -> LLMResponse | None:
        return self._last_response

    def can_continue(self) -> bool:
        return not self._completed and not self.is_at_step_limit

    def count_tool_calls(self, name: str) -> int:
        with self._lock:
            return sum(1 for r in self._ledger if r.name == name)

    def count_duplicate_tool_calls(self, name: str, input_hash: str) -> int:
        with self._lock:
            return sum(1 for r in self._ledger if r.name == name and r.input_hash == input_hash)

    def last_tool_call(self, name: str | None = None) -> ToolCallRecord | None:
        with self._lock:
            for record in reversed(self._ledger):
                if name is None or record.name == name:
                    return record
        return None

    def count_consecutive_same_tool_calls(self) -> int:
        """How many trailing ledger entries repeat the last call (same name and input)."""
        with self._lock:
            if not self._ledger:
                return 0
            last = self._ledger[-1]
            count = 0
            for record in reversed(self._ledger):
                if record != last:
                    break
                count += 1
            return count

    def snapshot(self) -> LoopStateSnapshot:
        with self._lock:
            return LoopStateSnapshot(
                current_step=self._current_step,
                max_steps=self.configuration.max_steps,
                tool_call_history=tuple(self._ledger),
            )

    # -- writes --------------------------------------------------------------

    def increment_step(self) -> int:
        """Advance the step counter.

        Raises:
            MaxStepsExceededError: The increment would pass ``max_steps``;
                the counter is left unchanged.
        """
        with self._lock:
            if self._current_step + 1 > self.configuration.max_steps:
                raise MaxStepsExceededError(self.configuration.max_steps)
            self._current_step += 1
            return self._current_step

    def append_assistant_response(self, response: LLMResponse) -> None:
        """Record *response* and add it to history as at most one assistant message."""
        parts: list[TextPart | ToolUsePart] = []
        for block in response.content:
            if isinstance(block, TextBlock):
                if block.text:
                    parts.append(TextPart(block.text))
            else:
                parts.append(ToolUsePart(id=block.id, name=block.name, input=block.input))
        with self._lock:
            self._last_response = response
            if parts:
                self._messages.append(Message(role="assistant", contents=tuple(parts)))

    def append_tool_results(self, results: list[ToolResultInfo]) -> None:
        """Append a whole batch of results as one user message."""
        if not results:
            return
        with self._lock:
            self._messages.append(Message.tool_results(results))

    def append_final_output_request(self) -> None:
        with self._lock:
            self._messages.append(Message.user(FINAL_OUTPUT_REQUEST))

    def record_tool_call(self, call: ToolCallInfo) -> ToolCallRecord:
        record = ToolCallRecord.from_call(call)
        with self._lock:
            self._ledger.append(record)
        return record

    def mark_completed(self) -> None:
        self._completed = True
