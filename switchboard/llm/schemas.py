"""Pydantic DTOs for messages, content blocks and completion results.

Field names follow the Anthropic Messages API so blocks and tool
definitions serialise straight into a request payload with
``model_dump(exclude_none=True)``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import StrEnum
from types import MappingProxyType
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ModelTier(StrEnum):
    FAST = "fast"
    BALANCED = "balanced"
    REASONING = "reasoning"


# Provider model ids used when Settings does not override them
DEFAULT_MODEL_IDS: Mapping[ModelTier, str] = MappingProxyType(
    {
        ModelTier.FAST: "claude-3-5-haiku-20241022",
        ModelTier.BALANCED: "claude-sonnet-4-20250514",
        ModelTier.REASONING: "claude-opus-4-20250514",
    }
)

StopReason = Literal["end_turn", "tool_use", "max_tokens", "stop_sequence"]


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool | None = None


ContentBlock = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One conversation turn. Block order is preserved as produced."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: list[ContentBlock]

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", content=[TextBlock(text=text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role="assistant", content=[TextBlock(text=text)])

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def validate_tool_references(messages: list[Message]) -> str | None:
    """Check every tool_result refers to an earlier tool_use.

    Returns the first dangling tool_use_id, or None when the conversation
    is consistent.
    """
    seen: set[str] = set()
    for message in messages:
        for block in message.content:
            match block:
                case ToolUseBlock(id=tool_id):
                    seen.add(tool_id)
                case ToolResultBlock(tool_use_id=ref):
                    if ref not in seen:
                        return ref
                case TextBlock():
                    pass
    return None


def extract_text(content: list[ContentBlock]) -> str:
    """Join the text blocks of a content list."""
    return "".join(block.text for block in content if isinstance(block, TextBlock))


class ToolDefinition(BaseModel):
    """A capability description; the implementation is supplied per call."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_api(self) -> dict[str, Any]:
        return self.model_dump()


# ---------------------------------------------------------------------------
# Usage + results
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    """Token counts for one or more completions.

    Cache counts stay None unless the provider reported them, so a summed
    usage only carries cache fields when some operand did.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)
    cache_creation_input_tokens: int | None = Field(None, ge=0)
    cache_read_input_tokens: int | None = Field(None, ge=0)

    @classmethod
    def zero(cls) -> TokenUsage:
        return cls()

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_input_tokens=_add_optional(
                self.cache_creation_input_tokens, other.cache_creation_input_tokens
            ),
            cache_read_input_tokens=_add_optional(
                self.cache_read_input_tokens, other.cache_read_input_tokens
            ),
        )

    def to_wire(self) -> dict[str, int]:
        """camelCase dict for the browser stream protocol."""
        out = {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}
        if self.cache_creation_input_tokens is not None:
            out["cacheCreationInputTokens"] = self.cache_creation_input_tokens
        if self.cache_read_input_tokens is not None:
            out["cacheReadInputTokens"] = self.cache_read_input_tokens
        return out


def _add_optional(a: int | None, b: int | None) -> int | None:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)


class CompletionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: list[ContentBlock]
    usage: TokenUsage
    stop_reason: StopReason
    model: str = ""

    @property
    def text(self) -> str:
        return extract_text(self.content)

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


def serialize_tool_output(result: Any) -> str:
    """Tool results travel as text: strings verbatim, anything else as JSON."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
