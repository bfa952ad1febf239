"""Tool-using agent loop with typed structured output, on top of litellm.

Swap any model by changing the model string. Everything else stays the same.

Usage:
    from pydantic import BaseModel
    from structured_agent import run_agent, run_agent_to_completion

    class Forecast(BaseModel):
        city: str
        summary: str

    def get_weather(location: str) -> str:
        '''Get the current weather for a location.'''
        ...

    # Sync, straight to the decoded output
    forecast = run_agent_to_completion("gpt-4o", "Weather in Oslo?", Forecast, tools=[get_weather])

    # Async, step by step
    stream = run_agent("anthropic/claude-sonnet-4-5-20250929", "Weather in Oslo?", Forecast,
                       tools=[get_weather])
    async for step in stream:
        print(step.kind)
"""

from structured_agent.agent import arun_agent_to_completion, run_agent, run_agent_to_completion
from structured_agent.config import AgentConfiguration, RetryConfiguration
from structured_agent.errors import (
    AgentError,
    InvalidStateError,
    LLMAuthError,
    LLMContentFilterError,
    LLMDecodingError,
    LLMEmptyResponseError,
    LLMError,
    LLMInvalidRequestError,
    LLMModelNotFoundError,
    LLMModelNotSupportedError,
    LLMNetworkError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
    LLMTransientError,
    MaxStepsExceededError,
    OutputDecodingFailedError,
    ToolNotFoundError,
    classify_error,
    wrap_error,
)
from structured_agent.loop import AgentLoopRunner, ExecutionPhase
from structured_agent.messages import (
    AgentStep,
    FinalResponseStep,
    LLMResponse,
    Message,
    StopReason,
    TextBlock,
    ThinkingStep,
    TokenUsage,
    ToolCallInfo,
    ToolCallStep,
    ToolResultInfo,
    ToolResultStep,
    ToolUseBlock,
)
from structured_agent.provider import LiteLLMProvider, LLMRequest, Provider
from structured_agent.rate_limit import RateLimitInfo, extract_rate_limit_info
from structured_agent.retry import (
    ExponentialBackoffPolicy,
    NoRetryPolicy,
    RateLimitAwareError,
    RetryCancelledError,
    RetryEvent,
    RetryPolicy,
    send_with_retry,
)
from structured_agent.state import LoopStateStore
from structured_agent.stream import AgentStepStream
from structured_agent.structured import OutputDecoder, PydanticOutputDecoder
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
    TerminationPolicy,
    UnexpectedStopReason,
    make_default_policy,
    make_standard_policy,
)
from structured_agent.tools import Tool, ToolOutput, ToolSet, tool

__all__ = [
    # Entry points
    "run_agent",
    "arun_agent_to_completion",
    "run_agent_to_completion",
    "AgentStepStream",
    "AgentLoopRunner",
    "ExecutionPhase",
    # Configuration
    "AgentConfiguration",
    "RetryConfiguration",
    # Messages and steps
    "Message",
    "LLMResponse",
    "TextBlock",
    "ToolUseBlock",
    "TokenUsage",
    "StopReason",
    "ToolCallInfo",
    "ToolResultInfo",
    "AgentStep",
    "ThinkingStep",
    "ToolCallStep",
    "ToolResultStep",
    "FinalResponseStep",
    # Providers
    "Provider",
    "LLMRequest",
    "LiteLLMProvider",
    # Tools
    "Tool",
    "ToolOutput",
    "ToolSet",
    "tool",
    # Output
    "OutputDecoder",
    "PydanticOutputDecoder",
    # State
    "LoopStateStore",
    # Termination
    "TerminationPolicy",
    "StandardTerminationPolicy",
    "DuplicateDetectionPolicy",
    "CompositeTerminationPolicy",
    "make_default_policy",
    "make_standard_policy",
    "ContinueWithTools",
    "ContinueWithThinking",
    "TerminateWithOutput",
    "TerminateImmediately",
    "Completed",
    "MaxStepsReached",
    "DuplicateToolCallDetected",
    "MaxToolCallsPerToolReached",
    "UnexpectedStopReason",
    "EmptyResponse",
    # Retry
    "RetryPolicy",
    "ExponentialBackoffPolicy",
    "NoRetryPolicy",
    "RetryEvent",
    "RateLimitAwareError",
    "RetryCancelledError",
    "RateLimitInfo",
    "extract_rate_limit_info",
    "send_with_retry",
    # Errors
    "LLMError",
    "LLMTransientError",
    "LLMRateLimitError",
    "LLMServerError",
    "LLMTimeoutError",
    "LLMNetworkError",
    "LLMAuthError",
    "LLMInvalidRequestError",
    "LLMModelNotFoundError",
    "LLMModelNotSupportedError",
    "LLMEmptyResponseError",
    "LLMDecodingError",
    "LLMContentFilterError",
    "AgentError",
    "MaxStepsExceededError",
    "OutputDecodingFailedError",
    "InvalidStateError",
    "ToolNotFoundError",
    "classify_error",
    "wrap_error",
]
