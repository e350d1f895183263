"""Browser stream wire protocol.

Each event travels as one SSE frame::

    data: {"type": "content_delta", "data": {"delta": "Hel"}}

followed by a blank line. Payload keys are camelCase. Lines starting
with ``:`` are comments (keep-alives) and are ignored by the decoder, as
are blank lines; bare JSON lines without the ``data:`` prefix are
accepted too.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from switchboard.errors import SwitchboardError
from switchboard.llm.chat import TextEvent, ToolLoopStream, ToolResultEvent, ToolUseEvent
from switchboard.llm.schemas import TokenUsage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class WireEvent(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    type: ClassVar[str]

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageStart(WireEvent):
    type: ClassVar[str] = "message_start"

    id: str
    conversation_id: str | None = None
    role: str = "assistant"
    model: str = ""


class ContentDelta(WireEvent):
    type: ClassVar[str] = "content_delta"

    delta: str


class ToolCallStart(WireEvent):
    type: ClassVar[str] = "tool_call_start"

    tool_call_id: str
    name: str
    arguments: dict[str, Any] = {}


class ToolResult(WireEvent):
    type: ClassVar[str] = "tool_result"

    tool_call_id: str
    result: Any = None
    is_error: bool | None = None


class MessageEnd(WireEvent):
    type: ClassVar[str] = "message_end"

    message_id: str | None = None
    token_usage: dict[str, int] | None = None
    cost_usd: float | None = None


class StreamError(WireEvent):
    type: ClassVar[str] = "error"

    message: str
    code: str | None = None


EVENT_TYPES: dict[str, type[WireEvent]] = {
    cls.type: cls
    for cls in (MessageStart, ContentDelta, ToolCallStart, ToolResult, MessageEnd, StreamError)
}


def parse_wire_event(obj: Any) -> WireEvent | None:
    """Build a WireEvent from a decoded ``{"type", "data"}`` object.

    Unknown types and invalid payloads are logged and return None.
    """
    if not isinstance(obj, dict):
        logger.warning("Ignoring non-object stream line: %.200r", obj)
        return None
    event_cls = EVENT_TYPES.get(obj.get("type", ""))
    if event_cls is None:
        logger.warning("Ignoring unknown stream event type: %r", obj.get("type"))
        return None
    try:
        return event_cls.model_validate(obj.get("data") or {})
    except ValidationError as e:
        logger.warning("Ignoring invalid %s event: %s", event_cls.type, e)
        return None


# ---------------------------------------------------------------------------
# Encoder / decoder
# ---------------------------------------------------------------------------


class StreamEncoder:
    """Serialises WireEvents into SSE frames."""

    def encode(self, event: WireEvent) -> bytes:
        body = json.dumps({"type": event.type, "data": event.payload()}, ensure_ascii=False)
        return f"data: {body}\n\n".encode()

    def comment(self, text: str = "keep-alive") -> bytes:
        # Newlines would end the comment early
        flat = " ".join(text.splitlines())
        return f": {flat}\n\n".encode()


class StreamDecoder:
    """Incremental decoder for the wire protocol.

    ``feed`` accepts arbitrary chunk boundaries, including ones that
    split a line or a multi-byte UTF-8 sequence.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[WireEvent]:
        text = chunk if isinstance(chunk, str) else self._utf8.decode(chunk)
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def finish(self) -> list[WireEvent]:
        """Flush a trailing line that had no newline."""
        self._buffer += self._utf8.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return self._parse_lines([tail])

    def _parse_lines(self, lines: list[str]) -> list[WireEvent]:
        events = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _parse_line(line: str) -> WireEvent | None:
        line = line.strip()
        if not line or line.startswith(":"):
            return None
        if line.startswith("data:"):
            line = line[5:].lstrip()
        elif line.startswith(("event:", "id:", "retry:")):
            return None
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping undecodable stream line: %.200s", line)
            return None
        return parse_wire_event(obj)


async def decode_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[WireEvent]:
    """Decode an async byte stream into WireEvents."""
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.finish():
        yield event


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


async def relay_tool_loop(
    stream: ToolLoopStream,
    *,
    message_id: str,
    model: str,
    conversation_id: str | None = None,
    cost_for: Callable[[TokenUsage], float] | None = None,
) -> AsyncIterator[WireEvent]:
    """Translate a tool-loop stream into wire events.

    Always starts with ``message_start``; ends with ``message_end`` on
    success or ``error`` when the loop raised a SwitchboardError.
    """
    yield MessageStart(id=message_id, conversation_id=conversation_id, model=model)
    try:
        async for event in stream:
            match event:
                case TextEvent():
                    yield ContentDelta(delta=event.text)
                case ToolUseEvent():
                    yield ToolCallStart(
                        tool_call_id=event.tool_use.id,
                        name=event.tool_use.name,
                        arguments=event.tool_use.input,
                    )
                case ToolResultEvent():
                    yield ToolResult(
                        tool_call_id=event.tool_use_id,
                        result=event.content,
                        is_error=event.is_error or None,
                    )
        result = await stream.result()
    except SwitchboardError as e:
        logger.error("Stream error: %s", e)
        yield StreamError(message=e.message, code=type(e).__name__)
        return

    yield MessageEnd(
        message_id=message_id,
        token_usage=result.total_usage.to_wire(),
        cost_usd=cost_for(result.total_usage) if cost_for is not None else None,
    )
