"""Chat service -- buffered chat, streamed chat and the agentic tool loop.

Sits between callers and the completion client. Every entry point takes a
tier (``ModelTier``) rather than a provider model id, applies the retry
policy, honours an optional ``cancel`` event and accumulates usage.

Streams are pull-based: ``stream_chat`` and ``stream_tool_loop`` return
async iterators whose ``result()`` drains the rest and hands back the
final value. The ``on_*`` hooks are optional push-style side channels.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

from switchboard.errors import (
    BadRequestError,
    NetworkError,
    RequestCancelledError,
    ToolExecutionError,
    ToolLoopExceededError,
)
from switchboard.llm.client import (
    BlockAccumulator,
    BlockDelta,
    BlockStarted,
    BlockStopped,
    CompletionClient,
    CompletionRequest,
    MessageDelta,
    MessageStarted,
    ProviderEvent,
    StreamCompleted,
)
from switchboard.llm.retry import RetryPolicy, retry_async
from switchboard.llm.schemas import (
    CompletionResult,
    ContentBlock,
    Message,
    ModelTier,
    TokenUsage,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
    serialize_tool_output,
    validate_tool_references,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")
R = TypeVar("R")


# ---------------------------------------------------------------------------
# Requests, events, results
# ---------------------------------------------------------------------------


@dataclass
class ToolCallResult:
    """What a tool callback hands back. ``result`` may be any JSON-able value."""

    result: Any
    is_error: bool = False


ToolCallback = Callable[[str, dict[str, Any]], Awaitable[ToolCallResult]]


@dataclass
class ChatRequest:
    messages: list[Message]
    model: ModelTier = ModelTier.BALANCED
    system: str | None = None
    tools: list[ToolDefinition] | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    stop_sequences: list[str] | None = None
    on_text: Callable[[str], None] | None = None
    on_tool_use: Callable[[ToolUseBlock], None] | None = None
    on_usage: Callable[[TokenUsage], None] | None = None
    cancel: asyncio.Event | None = None


@dataclass
class ToolLoopRequest:
    messages: list[Message]
    tools: list[ToolDefinition]
    execute_tool_call: ToolCallback
    model: ModelTier = ModelTier.BALANCED
    system: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    max_iterations: int | None = None
    on_text: Callable[[str], None] | None = None
    on_tool_call: Callable[[ToolUseBlock], None] | None = None
    on_tool_result: Callable[[str, Any, bool], None] | None = None
    cancel: asyncio.Event | None = None


@dataclass(frozen=True)
class TextEvent:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolUseEvent:
    tool_use: ToolUseBlock
    type: Literal["tool_use"] = "tool_use"


@dataclass(frozen=True)
class ToolResultEvent:
    tool_use_id: str
    name: str
    content: str
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"


ChatEvent = TextEvent | ToolUseEvent
ToolLoopEvent = TextEvent | ToolUseEvent | ToolResultEvent


@dataclass(frozen=True)
class ToolLoopResult:
    """Outcome of a completed tool loop.

    ``messages`` is the full conversation including every assistant turn
    and tool-result message; ``content`` is the final assistant content.
    """

    content: list[ContentBlock]
    messages: list[Message]
    total_usage: TokenUsage
    iterations: int


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------


class EventStream(Generic[E, R]):
    """Async iterator of events plus a final assembled result.

    Finite and not restartable. ``result()`` consumes whatever is left.
    """

    def __init__(self, producer: Callable[[Callable[[R], None]], AsyncIterator[E]]) -> None:
        self._result: R | None = None
        self._events = producer(self._set_result)

    def _set_result(self, result: R) -> None:
        self._result = result

    def __aiter__(self) -> EventStream[E, R]:
        return self

    async def __anext__(self) -> E:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()

    async def result(self) -> R:
        async for _ in self:
            pass
        if self._result is None:
            raise RuntimeError("Stream closed before producing a result")
        return self._result


class ChatStream(EventStream[ChatEvent, CompletionResult]):
    """Events of one streamed completion."""


class ToolLoopStream(EventStream[ToolLoopEvent, ToolLoopResult]):
    """Events of every turn of a tool loop, tool results included."""


# ---------------------------------------------------------------------------
# Cancellation helpers
# ---------------------------------------------------------------------------


def _raise_if_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise RequestCancelledError("Request cancelled by caller")


async def _with_cancel(awaitable: Awaitable[T], cancel: asyncio.Event | None) -> T:
    """Await ``awaitable`` unless ``cancel`` fires first.

    On cancellation the in-flight work is cancelled and allowed to unwind
    (closing any open HTTP stream) before RequestCancelledError is raised.
    """
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RequestCancelledError("Request cancelled by caller")

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
    if work.cancelled():
        raise RequestCancelledError("Request cancelled by caller")
    return work.result()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ChatService:
    """Tier-aware chat over a CompletionClient."""

    def __init__(
        self,
        client: CompletionClient,
        *,
        model_ids: Mapping[str, str],
        retry: RetryPolicy | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        max_tool_iterations: int = 10,
    ) -> None:
        missing = {tier.value for tier in ModelTier} - set(model_ids)
        if missing:
            raise ValueError(f"model_ids missing tiers: {sorted(missing)}")
        if max_tool_iterations < 1:
            raise ValueError("max_tool_iterations must be >= 1")
        self._client = client
        self._model_ids = dict(model_ids)
        self._retry = retry or RetryPolicy()
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._max_tool_iterations = max_tool_iterations

    def model_id(self, tier: ModelTier) -> str:
        return self._model_ids[ModelTier(tier).value]

    def _completion_request(self, request: ChatRequest) -> CompletionRequest:
        """Validate the conversation and build the provider request."""
        if not request.messages:
            raise BadRequestError("At least one message is required")
        dangling = validate_tool_references(request.messages)
        if dangling is not None:
            raise BadRequestError(
                f"tool_result references unknown tool_use id '{dangling}'",
                hint="Every tool_result must follow the assistant message that requested it.",
            )
        return CompletionRequest(
            model=self.model_id(request.model),
            messages=list(request.messages),
            max_tokens=request.max_tokens or self._max_tokens,
            temperature=(
                request.temperature if request.temperature is not None else self._temperature
            ),
            system=request.system,
            tools=request.tools,
            stop_sequences=request.stop_sequences,
        )

    # ------------------------------------------------------------------
    # Buffered
    # ------------------------------------------------------------------

    async def chat(self, request: ChatRequest) -> CompletionResult:
        """One buffered completion under the retry policy."""
        completion = self._completion_request(request)
        logger.debug("chat: model=%s messages=%d", completion.model, len(completion.messages))

        result = await _with_cancel(
            retry_async(
                lambda: self._client.complete(completion),
                policy=self._retry,
                operation="chat",
            ),
            request.cancel,
        )
        if request.on_usage is not None:
            request.on_usage(result.usage)
        return result

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream_chat(self, request: ChatRequest) -> ChatStream:
        """Open a streamed completion.

        The request is validated here, before any network call; the
        provider stream opens on first iteration.
        """
        completion = self._completion_request(request)
        return ChatStream(lambda deliver: self._chat_events(request, completion, deliver))

    async def _open_stream(
        self, completion: CompletionRequest
    ) -> tuple[AsyncIterator[ProviderEvent], ProviderEvent]:
        """Open a provider stream and read its first event, with retries.

        Failures after the first event has arrived are not retried: the
        caller may already have seen output.
        """

        async def attempt() -> tuple[AsyncIterator[ProviderEvent], ProviderEvent]:
            events = self._client.stream_complete(completion)
            first = await anext(events, None)
            if first is None:
                raise NetworkError("Provider stream closed before any event")
            return events, first

        return await retry_async(attempt, policy=self._retry, operation="stream open")

    async def _chat_events(
        self,
        request: ChatRequest,
        completion: CompletionRequest,
        deliver: Callable[[CompletionResult], None],
    ) -> AsyncIterator[ChatEvent]:
        cancel = request.cancel
        logger.debug(
            "stream_chat: model=%s messages=%d", completion.model, len(completion.messages)
        )
        events, event = await _with_cancel(self._open_stream(completion), cancel)
        accumulator = BlockAccumulator()

        try:
            while event is not None:
                match event:
                    case BlockStarted():
                        accumulator.start(event)
                    case BlockDelta():
                        accumulator.delta(event)
                        if event.text:
                            if request.on_text is not None:
                                request.on_text(event.text)
                            yield TextEvent(text=event.text)
                    case BlockStopped():
                        block = accumulator.stop(event.index)
                        if isinstance(block, ToolUseBlock):
                            if request.on_tool_use is not None:
                                request.on_tool_use(block)
                            yield ToolUseEvent(tool_use=block)
                    case StreamCompleted():
                        if request.on_usage is not None:
                            request.on_usage(event.result.usage)
                        deliver(event.result)
                        return
                    case MessageStarted() | MessageDelta():
                        pass
                event = await _with_cancel(anext(events, None), cancel)
            raise NetworkError("Provider stream ended without a result")
        finally:
            await events.aclose()

    # ------------------------------------------------------------------
    # Tool loop
    # ------------------------------------------------------------------

    def stream_tool_loop(self, request: ToolLoopRequest) -> ToolLoopStream:
        """Run the tool loop as a stream of every turn's events."""
        if not request.messages:
            raise BadRequestError("At least one message is required")
        if request.max_iterations is not None and request.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        return ToolLoopStream(lambda deliver: self._tool_loop_events(request, deliver))

    async def execute_tool_loop(self, request: ToolLoopRequest) -> ToolLoopResult:
        """Run the tool loop to completion and return the final state."""
        return await self.stream_tool_loop(request).result()

    async def _tool_loop_events(
        self,
        request: ToolLoopRequest,
        deliver: Callable[[ToolLoopResult], None],
    ) -> AsyncIterator[ToolLoopEvent]:
        max_iterations = (
            request.max_iterations
            if request.max_iterations is not None
            else self._max_tool_iterations
        )
        messages = list(request.messages)
        total_usage = TokenUsage.zero()
        iterations = 0

        while iterations < max_iterations:
            _raise_if_cancelled(request.cancel)
            iterations += 1

            turn = self.stream_chat(
                ChatRequest(
                    messages=list(messages),
                    model=request.model,
                    system=request.system,
                    tools=request.tools,
                    max_tokens=request.max_tokens,
                    temperature=request.temperature,
                    on_text=request.on_text,
                    on_tool_use=request.on_tool_call,
                    cancel=request.cancel,
                )
            )
            try:
                async for event in turn:
                    yield event
                response = await turn.result()
            finally:
                await turn.aclose()
            total_usage = total_usage + response.usage

            if response.content:
                messages.append(Message(role="assistant", content=response.content))

            tool_uses = response.tool_uses
            if response.stop_reason != "tool_use" or not tool_uses:
                logger.debug(
                    "Tool loop done after %d iteration(s) (stop_reason=%s)",
                    iterations,
                    response.stop_reason,
                )
                deliver(
                    ToolLoopResult(
                        content=response.content,
                        messages=messages,
                        total_usage=total_usage,
                        iterations=iterations,
                    )
                )
                return

            results: list[ContentBlock] = []
            for tool_use in tool_uses:
                _raise_if_cancelled(request.cancel)
                block = await self._run_tool(request, tool_use)
                results.append(block)
                yield ToolResultEvent(
                    tool_use_id=tool_use.id,
                    name=tool_use.name,
                    content=block.content,
                    is_error=bool(block.is_error),
                )
            # All results of one turn travel in a single user message
            messages.append(Message(role="user", content=results))

        logger.warning("Tool loop hit max_iterations=%d", max_iterations)
        raise ToolLoopExceededError(max_iterations)

    async def _run_tool(self, request: ToolLoopRequest, tool_use: ToolUseBlock) -> ToolResultBlock:
        """Execute one tool call; failures become error tool results."""
        try:
            outcome = await request.execute_tool_call(tool_use.name, tool_use.input)
        except Exception as exc:
            error = ToolExecutionError(tool_use.name, exc)
            logger.warning("%s", error.message)
            if request.on_tool_result is not None:
                request.on_tool_result(tool_use.id, {"error": error.detail}, True)
            return ToolResultBlock(
                tool_use_id=tool_use.id,
                content=f"Error: {error.detail}",
                is_error=True,
            )

        if request.on_tool_result is not None:
            request.on_tool_result(tool_use.id, outcome.result, outcome.is_error)
        return ToolResultBlock(
            tool_use_id=tool_use.id,
            content=serialize_tool_output(outcome.result),
            is_error=True if outcome.is_error else None,
        )
