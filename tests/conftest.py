"""Shared fixtures and fakes for Switchboard tests.

ScriptedClient stands in for CompletionClient: each call pops the next
scripted item, raising it if it is an exception. Streamed calls replay a
CompletionResult as the provider event sequence the real client emits.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from switchboard.config import Settings
from switchboard.llm.chat import ChatService
from switchboard.llm.client import (
    BlockDelta,
    BlockStarted,
    BlockStopped,
    MessageDelta,
    MessageStarted,
    StreamCompleted,
)
from switchboard.llm.retry import RetryPolicy
from switchboard.llm.schemas import (
    CompletionResult,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
)

MODEL_IDS = {
    "fast": "test-fast",
    "balanced": "test-balanced",
    "reasoning": "test-reasoning",
}

# Zero-delay retries so tests never sleep
FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay_s=0.0, jitter=False)


# ---------------------------------------------------------------------------
# Result builders
# ---------------------------------------------------------------------------


def text_reply(text: str, input_tokens: int = 10, output_tokens: int = 5) -> CompletionResult:
    return CompletionResult(
        content=[TextBlock(text=text)] if text else [],
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason="end_turn",
        model="test-model",
    )


def tool_reply(
    *tool_uses: tuple[str, str, dict[str, Any]],
    text: str = "",
    input_tokens: int = 20,
    output_tokens: int = 8,
) -> CompletionResult:
    """A tool_use turn. Each tool use is (id, name, input)."""
    content: list[Any] = [TextBlock(text=text)] if text else []
    content.extend(ToolUseBlock(id=i, name=n, input=inp) for i, n, inp in tool_uses)
    return CompletionResult(
        content=content,
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason="tool_use",
        model="test-model",
    )


def provider_events(result: CompletionResult, chunk: int = 4) -> list[Any]:
    """Replay a result as provider events, splitting text and JSON into chunks."""
    events: list[Any] = [
        MessageStarted(
            message_id="msg_test",
            model=result.model,
            usage=TokenUsage(input_tokens=result.usage.input_tokens, output_tokens=1),
        )
    ]
    for index, block in enumerate(result.content):
        match block:
            case TextBlock(text=text):
                events.append(BlockStarted(index=index, block_type="text"))
                for i in range(0, len(text), chunk):
                    events.append(BlockDelta(index=index, text=text[i : i + chunk]))
            case ToolUseBlock(id=tool_id, name=name, input=tool_input):
                events.append(
                    BlockStarted(index=index, block_type="tool_use", tool_id=tool_id, tool_name=name)
                )
                raw = json.dumps(tool_input) if tool_input else ""
                for i in range(0, len(raw), chunk):
                    events.append(BlockDelta(index=index, partial_json=raw[i : i + chunk]))
        events.append(BlockStopped(index=index))
    events.append(
        MessageDelta(
            stop_reason=result.stop_reason,
            usage={"output_tokens": result.usage.output_tokens},
        )
    )
    events.append(StreamCompleted(result=result))
    return events


# ---------------------------------------------------------------------------
# Fake client
# ---------------------------------------------------------------------------


class ScriptedClient:
    """Replays scripted results or errors; records every request."""

    def __init__(self, *script: CompletionResult | BaseException, delay: float = 0.0) -> None:
        self.script = list(script)
        self.delay = delay
        self.requests: list[Any] = []
        self.complete_calls = 0
        self.stream_calls = 0
        self.closed_streams = 0

    def _next(self) -> CompletionResult:
        if not self.script:
            raise AssertionError("ScriptedClient ran out of scripted replies")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def complete(self, request: Any) -> CompletionResult:
        self.complete_calls += 1
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._next()

    async def stream_complete(self, request: Any):
        self.stream_calls += 1
        self.requests.append(request)
        try:
            result = self._next()
            for event in provider_events(result):
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield event
        finally:
            self.closed_streams += 1


def make_chat(client: ScriptedClient, **kwargs: Any) -> ChatService:
    kwargs.setdefault("retry", FAST_RETRY)
    return ChatService(client, model_ids=MODEL_IDS, **kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with a dummy key and no retry delay."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        retry_initial_delay=0.0,
        api_base_url="https://api.test",
    )
