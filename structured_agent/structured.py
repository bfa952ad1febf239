"""Structured output decoding.

The loop only needs two things from an output type: the JSON Schema to send
with final-output requests, and a way to turn the model's text into a value
(or fail). ``PydanticOutputDecoder`` provides both for any ``BaseModel``.
"""

from __future__ import annotations

import re
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError

from structured_agent.errors import LLMDecodingError

T = TypeVar("T", bound=BaseModel)
OutputT_co = TypeVar("OutputT_co", covariant=True)


def strip_fences(content: str) -> str:
    """Strip markdown code fences from LLM response content."""
    content = content.strip()
    content = re.sub(r"^```(?:json|JSON)?\s*\n?", "", content)
    content = re.sub(r"\n?\s*```\s*$", "", content)
    return content.strip()


@runtime_checkable
class OutputDecoder(Protocol[OutputT_co]):
    """``decode`` raises ``LLMDecodingError`` when the text does not fit the schema."""

    @property
    def json_schema(self) -> dict[str, Any]: ...

    def decode(self, text: str) -> OutputT_co: ...


class PydanticOutputDecoder(Generic[T]):
    """Decode final output into *model_cls*.

    Raises ``LLMDecodingError`` (with the pydantic error as ``original``)
    when the text is not valid JSON for the model.
    """

    def __init__(self, model_cls: type[T]) -> None:
        self.model_cls = model_cls
        self._schema = model_cls.model_json_schema()

    @property
    def json_schema(self) -> dict[str, Any]:
        return self._schema

    @property
    def name(self) -> str:
        return self.model_cls.__name__

    def decode(self, text: str) -> T:
        try:
            return self.model_cls.model_validate_json(strip_fences(text))
        except ValidationError as e:
            raise LLMDecodingError(
                f"Output did not match {self.model_cls.__name__}: {e.error_count()} error(s)",
                original=e,
            ) from e
