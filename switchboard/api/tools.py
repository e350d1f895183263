"""Tool registry and dispatch for the tool loop.

``ToolDispatcher.dispatch`` has the ``execute_tool_call`` signature the
chat service expects, so a dispatcher can be handed straight to a
``ToolLoopRequest``. Handlers are async callables taking the tool input
as keyword arguments; whatever they return becomes the tool result.

Every tool input is validated before its handler runs. A tool registers
either a pydantic model (its JSON schema is derived from the model) or a
JSON schema dict (a strict pydantic model is built from its properties).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, tzinfo
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from switchboard.llm.chat import ToolCallResult
from switchboard.llm.schemas import ToolDefinition

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[Any]]

_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    # Smart-mode union keeps ints as ints
    "number": int | float,
    "boolean": bool,
    "array": list[Any],
    "object": dict[str, Any],
}


def _property_type(prop: dict[str, Any]) -> Any:
    if "enum" in prop:
        return Literal[tuple(prop["enum"])]
    return _JSON_TYPES.get(prop.get("type", ""), Any)


def model_from_schema(name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Build a strict pydantic model from a flat JSON object schema.

    Properties become fields typed by their JSON type (or ``enum``);
    names in ``required`` have no default. Unknown keys are allowed,
    matching JSON Schema's default ``additionalProperties``.
    """
    required = set(schema.get("required", ()))
    fields: dict[str, Any] = {}
    for prop_name, prop in schema.get("properties", {}).items():
        field_type = _property_type(prop)
        if prop_name in required:
            fields[prop_name] = (field_type, ...)
        else:
            fields[prop_name] = (field_type | None, None)
    return create_model(
        f"{name}_input",
        __config__=ConfigDict(strict=True, extra="allow"),
        **fields,
    )


def format_validation_error(error: ValidationError) -> str:
    """``path: message`` per issue, joined with ``; ``."""
    issues = []
    for issue in error.errors():
        path = ".".join(str(part) for part in issue["loc"])
        issues.append(f"{path}: {issue['msg']}" if path else issue["msg"])
    return "; ".join(issues)


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the model.

    Invalid input becomes an error result without calling the handler.
    Handler exceptions propagate; the tool loop turns them into error
    tool results so the model can react.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._input_models: dict[str, type[BaseModel]] = {}
        self._definitions: dict[str, ToolDefinition] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        schema: dict[str, Any] | type[BaseModel],
        description: str = "",
    ) -> None:
        """Register a tool handler with its input model or JSON schema."""
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            input_model = schema
            schema = schema.model_json_schema()
        else:
            input_model = model_from_schema(name, schema)

        self._handlers[name] = handler
        self._input_models[name] = input_model
        self._definitions[name] = ToolDefinition(
            name=name,
            description=description or schema.get("description", ""),
            input_schema={k: v for k, v in schema.items() if k != "description"},
        )

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    async def dispatch(self, name: str, args: dict[str, Any]) -> ToolCallResult:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("Model requested unknown tool: %s", name)
            return ToolCallResult(result=f"Unknown tool: {name}", is_error=True)

        try:
            self._input_models[name].model_validate(args)
        except ValidationError as e:
            detail = format_validation_error(e)
            logger.warning("Invalid input for tool %s: %s", name, detail)
            return ToolCallResult(result=f"Invalid input: {detail}", is_error=True)

        logger.debug("Dispatching tool %s", name)
        result = await handler(**args)
        return ToolCallResult(result=result)

    def tool_definitions(self) -> list[ToolDefinition]:
        return list(self._definitions.values())


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


class CurrentTimeInput(BaseModel):
    """Get the current date and time in a timezone."""

    timezone: str = Field(
        "UTC",
        description="IANA timezone name, e.g. 'Europe/Berlin'. Defaults to UTC.",
    )


async def current_time_tool(timezone: str = "UTC") -> dict[str, str]:
    tz: tzinfo
    if timezone.upper() == "UTC":
        # No tz database needed
        tz = UTC
    else:
        try:
            tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {timezone}") from e
    now = datetime.now(tz)
    return {"timezone": timezone, "iso": now.isoformat(), "weekday": now.strftime("%A")}


def register_builtin_tools(dispatcher: ToolDispatcher) -> None:
    """Register the tools every deployment gets."""
    dispatcher.register("current_time", current_time_tool, CurrentTimeInput)
