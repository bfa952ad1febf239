"""Tools the agent loop can call.

A tool is an opaque ``(name, schema, executor)`` triple. The easiest way to
get one is from a typed Python function:

    from structured_agent.tools import ToolSet, tool

    async def get_weather(location: str, unit: str = "celsius") -> str:
        '''Get the current weather for a location.'''
        ...

    tools = ToolSet([tool(get_weather)])
    tools.definitions()   # OpenAI function-calling schemas
    await tools.execute("get_weather", b'{"location": "Tokyo"}')

Business-level failures never raise out of ``ToolSet.execute``: bad JSON,
bad arguments and exceptions raised by the function all come back as a
``ToolOutput`` with ``is_error=True``. Only an unknown tool name raises.
"""

from __future__ import annotations

import inspect
import json as _json
import logging
from dataclasses import dataclass
from types import UnionType
from typing import Any, Awaitable, Callable, Iterable, Optional, Union, get_args, get_origin, get_type_hints

from structured_agent.errors import ToolNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
"""Maximum character length for a single tool result. Longer results are truncated."""

# Python type → JSON Schema type
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


@dataclass(frozen=True)
class ToolOutput:
    content: str
    is_error: bool = False


ToolExecutor = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class Tool:
    """A named, schema-described executor.

    Attributes:
        name: Name the model calls the tool by.
        description: One-line description shown to the model.
        parameters: JSON Schema of the tool's argument object.
        executor: Called with the decoded argument dict; sync or async.
            ``str`` results pass through, anything else is JSON-encoded.
    """

    name: str
    description: str
    parameters: dict[str, Any]
    executor: ToolExecutor

    def definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated, {len(text) - max_length} chars omitted]"


# ---------------------------------------------------------------------------
# Schema generation from callables
# ---------------------------------------------------------------------------


def _type_to_json_schema(tp: type) -> dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Supports: str, int, float, bool, list[X], dict, Optional[X].
    Raises ValueError for unsupported types.
    """
    origin = get_origin(tp)
    args = get_args(tp)

    # Optional[X] / X | None → unwrap to X (nullable not needed for function calling)
    if origin is Union or origin is UnionType:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _type_to_json_schema(non_none[0])

    if origin is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _type_to_json_schema(args[0])
        return schema

    if origin is dict or tp is dict:
        return {"type": "object"}

    if tp in _TYPE_MAP:
        return {"type": _TYPE_MAP[tp]}

    raise ValueError(
        f"Unsupported type annotation: {tp!r}. "
        f"Supported: str, int, float, bool, list[X], dict, Optional[X]."
    )


def callable_to_parameters(fn: Callable[..., Any]) -> dict[str, Any]:
    """Build the JSON Schema argument object for *fn* from its type hints.

    Every parameter must have a type annotation (raises ValueError otherwise).
    """
    sig = inspect.signature(fn)
    hints = get_type_hints(fn)

    properties: dict[str, Any] = {}
    required: list[str] = []

    for name, param in sig.parameters.items():
        if name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if name not in hints:
            raise ValueError(
                f"Parameter {name!r} of {fn.__name__!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )
        prop = _type_to_json_schema(hints[name])
        if param.default is not inspect.Parameter.empty:
            prop["default"] = param.default
        else:
            required.append(name)
        properties[name] = prop

    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return parameters


def tool(
    fn: Callable[..., Any],
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Tool:
    """Wrap a typed Python function (sync or async) as a :class:`Tool`.

    The description defaults to the first docstring line.
    """
    if description is None:
        description = ""
        if fn.__doc__:
            description = fn.__doc__.strip().split("\n")[0].strip()

    async def _executor(arguments: dict[str, Any]) -> Any:
        result = fn(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    return Tool(
        name=name or fn.__name__,
        description=description,
        parameters=callable_to_parameters(fn),
        executor=_executor,
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolSet:
    """Registry of tools available to one agent run.

    Raises:
        ValueError: If two tools share a name.
    """

    def __init__(
        self,
        tools: Iterable[Tool] = (),
        max_result_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self.max_result_length = max_result_length
        for t in tools:
            if t.name in self._tools:
                raise ValueError(f"Duplicate tool name {t.name!r}")
            self._tools[t.name] = t

    def __len__(self) -> int:
        return len(self._tools)

    def __bool__(self) -> bool:
        return bool(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def definitions(self) -> list[dict[str, Any]]:
        return [t.definition() for t in self._tools.values()]

    async def execute(self, name: str, input: bytes) -> ToolOutput:
        """Run tool *name* on JSON *input*.

        Raises:
            ToolNotFoundError: No tool is registered under *name*.
        """
        t = self._tools.get(name)
        if t is None:
            raise ToolNotFoundError(name)

        try:
            arguments = _json.loads(input) if input.strip() else {}
        except (_json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.error("Failed to parse tool call arguments for %s: %s", name, input[:200])
            return ToolOutput(content=f"Invalid JSON arguments: {exc}", is_error=True)
        if not isinstance(arguments, dict):
            return ToolOutput(
                content=f"Tool arguments must be a JSON object, got {type(arguments).__name__}",
                is_error=True,
            )

        try:
            raw_result = t.executor(arguments)
            if inspect.isawaitable(raw_result):
                raw_result = await raw_result
        except Exception as e:
            logger.debug("Tool %s raised: %s", name, e, exc_info=True)
            return ToolOutput(content=f"{type(e).__name__}: {e}", is_error=True)

        if isinstance(raw_result, ToolOutput):
            return ToolOutput(
                content=_truncate(raw_result.content, self.max_result_length),
                is_error=raw_result.is_error,
            )
        content = raw_result if isinstance(raw_result, str) else _json.dumps(raw_result, default=str)
        return ToolOutput(content=_truncate(content, self.max_result_length))
