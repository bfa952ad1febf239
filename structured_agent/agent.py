"""Entry points: start a run, or run one to completion.

Swap any model by changing the model string. Everything else stays the same.

    from pydantic import BaseModel
    from structured_agent import run_agent_to_completion

    class Answer(BaseModel):
        city: str
        temperature_c: float

    answer = run_agent_to_completion(
        "gpt-4o",
        "How warm is it in Tokyo right now?",
        Answer,
        tools=[get_weather],
    )
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar, Union

from pydantic import BaseModel

from structured_agent.config import AgentConfiguration, RetryConfiguration
from structured_agent.loop import AgentLoopRunner
from structured_agent.messages import Message
from structured_agent.provider import LiteLLMProvider, Provider
from structured_agent.retry import RetryEventHandler, RetryPolicy
from structured_agent.state import LoopStateStore
from structured_agent.stream import AgentStepStream
from structured_agent.structured import OutputDecoder, PydanticOutputDecoder
from structured_agent.termination import TerminationPolicy
from structured_agent.tools import Tool, ToolSet, tool

logger = logging.getLogger(__name__)

T = TypeVar("T")

ToolsArg = Union[ToolSet, Iterable[Union[Tool, Callable[..., Any]]], None]


def _as_provider(provider: Provider | str) -> Provider:
    if isinstance(provider, str):
        return LiteLLMProvider(provider)
    return provider


def _as_decoder(output_type: type[BaseModel] | OutputDecoder[Any]) -> OutputDecoder[Any]:
    if isinstance(output_type, type) and issubclass(output_type, BaseModel):
        return PydanticOutputDecoder(output_type)
    if isinstance(output_type, OutputDecoder):
        return output_type
    raise TypeError(
        f"output_type must be a pydantic BaseModel subclass or an OutputDecoder, got {output_type!r}"
    )


def _as_toolset(tools: ToolsArg) -> ToolSet:
    if tools is None:
        return ToolSet()
    if isinstance(tools, ToolSet):
        return tools
    return ToolSet(t if isinstance(t, Tool) else tool(t) for t in tools)


def run_agent(
    provider: Provider | str,
    prompt: str | None,
    output_type: type[BaseModel] | OutputDecoder[Any],
    *,
    tools: ToolsArg = None,
    system_prompt: str | None = None,
    messages: Iterable[Message] | None = None,
    configuration: AgentConfiguration | None = None,
    retry: RetryConfiguration | RetryPolicy | None = None,
    on_retry: RetryEventHandler | None = None,
    policy: TerminationPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AgentStepStream[Any]:
    """Start an agent run and return its step stream.

    Nothing is sent until the stream is pulled.

    Args:
        provider: A :class:`Provider`, or a litellm model string.
        prompt: User prompt appended after *messages*. May be ``None`` when
            *messages* already holds the conversation.
        output_type: Pydantic model class, or any :class:`OutputDecoder`.
        tools: ToolSet, or an iterable of Tools and plain functions.
        system_prompt: Optional system prompt sent with every request.
        messages: Prior conversation history.
        configuration: Step/tool bounds. Defaults to ``AgentConfiguration()``.
        retry: Retry configuration or policy. Defaults to 5 retries.
        on_retry: Called with a RetryEvent before each backoff sleep.
        policy: Termination policy override.
        sleep: Awaitable sleep used between retries.
    """
    history = list(messages or [])
    if prompt is not None:
        history.append(Message.user(prompt))
    if not history:
        raise ValueError("run_agent needs a prompt or initial messages")

    state = LoopStateStore(
        configuration or AgentConfiguration(),
        tools=_as_toolset(tools),
        messages=history,
        system_prompt=system_prompt,
    )
    runner = AgentLoopRunner(
        _as_provider(provider),
        _as_decoder(output_type),
        state,
        policy=policy,
        retry=retry,
        on_retry=on_retry,
        sleep=sleep,
    )
    return AgentStepStream(runner)


async def arun_agent_to_completion(
    provider: Provider | str,
    prompt: str | None,
    output_type: type[BaseModel] | OutputDecoder[Any],
    **kwargs: Any,
) -> Any:
    """Drive a run to its end and return the decoded output, or ``None``.

    ``None`` means the run stopped cleanly without output (duplicate call,
    per-tool quota, step limit, empty response, manual tool mode).
    """
    stream = run_agent(provider, prompt, output_type, **kwargs)
    return await stream.final_output()


def _run_sync(coro: Any) -> Any:
    """Run a coroutine synchronously, handling nested event loops."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is not None and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def run_agent_to_completion(
    provider: Provider | str,
    prompt: str | None,
    output_type: type[BaseModel] | OutputDecoder[Any],
    **kwargs: Any,
) -> Any:
    """Sync wrapper for :func:`arun_agent_to_completion`."""
    return _run_sync(arun_agent_to_completion(provider, prompt, output_type, **kwargs))
