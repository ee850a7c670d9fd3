"""
Tool decision schemas.

The provider's tool-decision output is untyped JSON. It is validated here
into a tagged variant and nothing past this module sees the raw payload.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

logger = structlog.stdlib.get_logger()


class NoTool(BaseModel):
    kind: Literal["none"] = "none"


class ToolCall(BaseModel):
    kind: Literal["tool"] = "tool"
    tool_name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


ToolDecision = Annotated[NoTool | ToolCall, Field(discriminator="kind")]

_decision_adapter: TypeAdapter[NoTool | ToolCall] = TypeAdapter(ToolDecision)


def parse_tool_decision(message: Any) -> NoTool | ToolCall:
    """
    Validate an assistant message (OpenAI shape) into a tool decision.

    Anything malformed collapses to NoTool: a bad decision must never block
    the answer itself.
    """
    if not isinstance(message, dict):
        return NoTool()

    tool_calls = message.get("tool_calls")
    if not isinstance(tool_calls, list) or not tool_calls:
        return NoTool()

    first = tool_calls[0]
    function = first.get("function") if isinstance(first, dict) else None
    if not isinstance(function, dict):
        return NoTool()

    arguments: Any = function.get("arguments") or {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            logger.warning("tools.decision.bad_arguments", tool=function.get("name"))
            return NoTool()

    try:
        return _decision_adapter.validate_python(
            {"kind": "tool", "tool_name": function.get("name"), "arguments": arguments}
        )
    except PydanticValidationError as e:
        logger.warning("tools.decision.invalid", error=str(e))
        return NoTool()
