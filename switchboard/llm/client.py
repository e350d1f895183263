"""Completion client -- thin transport over the Anthropic Messages API.

Issues buffered or streamed requests with direct httpx calls and
translates every transport or provider failure into the typed error
taxonomy in ``switchboard.errors``. No retry logic lives here.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, get_args

import httpx
from pydantic import ValidationError

from switchboard.errors import (
    AuthenticationError,
    BadRequestError,
    CompletionError,
    ConfigurationError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from switchboard.llm.schemas import (
    CompletionResult,
    ContentBlock,
    Message,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolDefinition,
    ToolUseBlock,
)

if TYPE_CHECKING:
    from switchboard.config import Settings

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_MESSAGES_PATH = "/v1/messages"
_STOP_REASONS = frozenset(get_args(StopReason))

# Provider error "type" -> taxonomy, for in-stream errors and error bodies
_ERROR_TYPES: dict[str, type[CompletionError]] = {
    "authentication_error": AuthenticationError,
    "permission_error": AuthenticationError,
    "invalid_request_error": BadRequestError,
    "not_found_error": BadRequestError,
    "request_too_large": BadRequestError,
    "rate_limit_error": RateLimitError,
    "api_error": ServerError,
    "overloaded_error": ServerError,
}


@dataclass
class CompletionRequest:
    """One provider call. ``model`` is the provider model id."""

    model: str
    messages: list[Message]
    max_tokens: int
    temperature: float | None = None
    system: str | None = None
    tools: list[ToolDefinition] | None = None
    stop_sequences: list[str] | None = None


# ---------------------------------------------------------------------------
# Provider stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageStarted:
    message_id: str
    model: str
    usage: TokenUsage


@dataclass(frozen=True)
class BlockStarted:
    index: int
    block_type: str  # "text" or "tool_use"
    tool_id: str = ""
    tool_name: str = ""


@dataclass(frozen=True)
class BlockDelta:
    index: int
    text: str = ""
    partial_json: str = ""


@dataclass(frozen=True)
class BlockStopped:
    index: int


@dataclass(frozen=True)
class MessageDelta:
    stop_reason: str | None
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageStopped:
    pass


@dataclass(frozen=True)
class StreamCompleted:
    """Terminal event carrying the fully reassembled result."""

    result: CompletionResult


ProviderEvent = (
    MessageStarted | BlockStarted | BlockDelta | BlockStopped | MessageDelta | StreamCompleted
)


def _parse_sse_event(
    data: dict[str, Any],
) -> MessageStarted | BlockStarted | BlockDelta | BlockStopped | MessageDelta | MessageStopped | None:
    """Parse one provider SSE payload.

    Pings and unknown event types return None. In-stream ``error``
    events (HTTP 200 with an error body) raise the mapped error.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error") or {}
        raise error_from_body(None, error.get("type"), error.get("message", ""))

    if event_type == "message_start":
        message = data.get("message") or {}
        return MessageStarted(
            message_id=message.get("id", ""),
            model=message.get("model", ""),
            usage=TokenUsage.model_validate(message.get("usage") or {}),
        )

    if event_type == "content_block_start":
        block = data.get("content_block") or {}
        index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return BlockStarted(
                index=index,
                block_type="tool_use",
                tool_id=block.get("id", ""),
                tool_name=block.get("name", ""),
            )
        return BlockStarted(index=index, block_type=block.get("type", "text"))

    if event_type == "content_block_delta":
        delta = data.get("delta") or {}
        index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return BlockDelta(index=index, text=delta.get("text", ""))
        if delta.get("type") == "input_json_delta":
            return BlockDelta(index=index, partial_json=delta.get("partial_json", ""))
        return None

    if event_type == "content_block_stop":
        return BlockStopped(index=data.get("index", 0))

    if event_type == "message_delta":
        # stop_reason lives in message_delta.delta, not message_start
        usage = {
            k: v for k, v in (data.get("usage") or {}).items() if isinstance(v, int)
        }
        return MessageDelta(
            stop_reason=(data.get("delta") or {}).get("stop_reason"),
            usage=usage,
        )

    if event_type == "message_stop":
        return MessageStopped()

    return None


# ---------------------------------------------------------------------------
# Block reassembly
# ---------------------------------------------------------------------------


class BlockAccumulator:
    """Reassembles content blocks from per-index deltas.

    Tool input arrives as partial JSON fragments; they are buffered per
    block index and parsed only when that block stops.
    """

    def __init__(self) -> None:
        self._open: dict[int, dict[str, Any]] = {}
        self._done: dict[int, ContentBlock] = {}

    def start(self, event: BlockStarted) -> None:
        self._open[event.index] = {
            "type": event.block_type,
            "id": event.tool_id,
            "name": event.tool_name,
            "parts": [],
        }

    def delta(self, event: BlockDelta) -> None:
        acc = self._open.get(event.index)
        if acc is None:
            # Delta without a start: treat as text so nothing is lost
            acc = {"type": "text", "id": "", "name": "", "parts": []}
            self._open[event.index] = acc
        acc["parts"].append(event.partial_json if acc["type"] == "tool_use" else event.text)

    def stop(self, index: int) -> ContentBlock | None:
        acc = self._open.pop(index, None)
        if acc is None:
            return None
        joined = "".join(acc["parts"])
        block: ContentBlock | None
        if acc["type"] == "tool_use":
            block = ToolUseBlock(id=acc["id"], name=acc["name"], input=_parse_tool_input(joined))
        elif acc["type"] == "text" and joined:
            block = TextBlock(text=joined)
        else:
            block = None
        if block is not None:
            self._done[index] = block
        return block

    def blocks(self) -> list[ContentBlock]:
        return [self._done[i] for i in sorted(self._done)]


def _parse_tool_input(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed tool input JSON: %.200s", raw)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Tool input is not a JSON object: %.200s", raw)
        return {}
    return parsed


def _merge_usage(usage: TokenUsage, update: dict[str, int]) -> TokenUsage:
    """Overlay message_delta usage counts, re-validating the result."""
    try:
        return TokenUsage.model_validate({**usage.model_dump(), **update})
    except ValidationError as e:
        raise ServerError(f"Malformed usage in message_delta: {update}") from e


def _normalize_stop_reason(raw: Any) -> StopReason:
    if raw in _STOP_REASONS:
        return raw
    if raw is not None:
        logger.debug("Unrecognised stop_reason %r treated as end_turn", raw)
    return "end_turn"


def parse_message(data: dict[str, Any]) -> CompletionResult:
    """Parse a buffered Messages API response body."""
    content: list[ContentBlock] = []
    for block in data.get("content") or []:
        block_type = block.get("type")
        if block_type == "text":
            content.append(TextBlock(text=block.get("text", "")))
        elif block_type == "tool_use":
            content.append(
                ToolUseBlock(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    input=block.get("input") or {},
                )
            )
        else:
            logger.debug("Skipping unsupported content block type: %s", block_type)
    return CompletionResult(
        content=content,
        usage=TokenUsage.model_validate(data.get("usage") or {}),
        stop_reason=_normalize_stop_reason(data.get("stop_reason")),
        model=data.get("model", ""),
    )


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


def _parse_retry_after(headers: httpx.Headers | dict[str, str] | None) -> float | None:
    if not headers:
        return None
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def error_from_body(
    status_code: int | None,
    error_type: str | None,
    message: str,
    retry_after: float | None = None,
) -> CompletionError:
    """Map an HTTP status and/or provider error type to the taxonomy."""
    err_cls: type[CompletionError]
    if status_code in (401, 403):
        err_cls = AuthenticationError
    elif status_code == 429:
        err_cls = RateLimitError
    elif status_code is not None and status_code >= 500:
        err_cls = ServerError
    elif status_code is not None and 400 <= status_code < 500:
        err_cls = BadRequestError
    else:
        err_cls = _ERROR_TYPES.get(error_type or "", ServerError)

    status_note = f" ({status_code})" if status_code is not None else ""
    text = f"Anthropic API error{status_note}: {error_type or 'unknown'} - {message}"

    if err_cls is RateLimitError:
        return RateLimitError(
            text,
            status_code=status_code,
            error_type=error_type,
            retry_after_seconds=retry_after,
        )
    hint = None
    if err_cls is AuthenticationError:
        hint = "Check ANTHROPIC_API_KEY / ANTHROPIC_AUTH_TOKEN."
    return err_cls(text, hint=hint, status_code=status_code, error_type=error_type)


def error_from_response(
    status_code: int, headers: httpx.Headers | dict[str, str] | None, body: str
) -> CompletionError:
    try:
        error = json.loads(body).get("error") or {}
        error_type = error.get("type", "unknown")
        message = error.get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        message = body[:500]
    return error_from_body(status_code, error_type, message, _parse_retry_after(headers))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class CompletionClient:
    """Buffered and streamed completions against the Messages API.

    Call ``start()`` (or use as an async context manager) before issuing
    requests. An ``httpx.AsyncClient`` may be injected instead, e.g. one
    built on ``httpx.MockTransport`` in tests.
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def __aenter__(self) -> CompletionClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            raise ConfigurationError(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set",
                hint="Export ANTHROPIC_API_KEY or add it to .env",
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=settings.api_max_connections,
            max_keepalive_connections=max(1, settings.api_max_connections // 2),
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        auth_type = "Bearer token" if settings.anthropic_auth_token else "API key"
        logger.info("httpx client initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        """Release the httpx client if this instance created it."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _require_http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise ConfigurationError("httpx client not initialized -- call start() first")
        return self._http

    @staticmethod
    def _build_payload(request: CompletionRequest, *, stream: bool = False) -> dict[str, Any]:
        """Build the Messages API payload shared by buffered and streamed calls."""
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": [m.to_api() for m in request.messages],
        }
        if request.system:
            payload["system"] = [
                {
                    "type": "text",
                    "text": request.system,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.tools:
            payload["tools"] = [t.to_api() for t in request.tools]
        if request.stop_sequences:
            payload["stop_sequences"] = request.stop_sequences
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """One buffered completion."""
        http = self._require_http()
        payload = self._build_payload(request)

        try:
            response = await http.post(_MESSAGES_PATH, json=payload)
        except httpx.TimeoutException as e:
            raise NetworkError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"HTTP error: {e}") from e

        if response.status_code != 200:
            raise error_from_response(response.status_code, response.headers, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise ServerError(
                f"Malformed response body: {response.text[:200]}",
                status_code=response.status_code,
            ) from e
        return parse_message(data)

    async def stream_complete(self, request: CompletionRequest) -> AsyncIterator[ProviderEvent]:
        """Open a streamed completion and yield provider events.

        Only ``data:`` lines are parsed. The last event is always a
        ``StreamCompleted`` with the reassembled result; a stream that
        closes before ``message_stop`` raises ``NetworkError``.
        """
        http = self._require_http()
        payload = self._build_payload(request, stream=True)

        accumulator = BlockAccumulator()
        usage = TokenUsage.zero()
        stop_reason: str | None = None
        model = request.model

        try:
            async with http.stream("POST", _MESSAGES_PATH, json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise error_from_response(
                        response.status_code,
                        response.headers,
                        body.decode("utf-8", "replace"),
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        data = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        logger.warning("Skipping undecodable SSE line: %.200s", line)
                        continue

                    event = _parse_sse_event(data)
                    match event:
                        case None:
                            continue
                        case MessageStarted():
                            usage = event.usage
                            model = event.model or model
                        case BlockStarted():
                            accumulator.start(event)
                        case BlockDelta():
                            accumulator.delta(event)
                        case BlockStopped():
                            accumulator.stop(event.index)
                        case MessageDelta():
                            stop_reason = event.stop_reason or stop_reason
                            usage = _merge_usage(usage, event.usage)
                        case MessageStopped():
                            yield StreamCompleted(
                                result=CompletionResult(
                                    content=accumulator.blocks(),
                                    usage=usage,
                                    stop_reason=_normalize_stop_reason(stop_reason),
                                    model=model,
                                )
                            )
                            return
                    yield event
        except httpx.TimeoutException as e:
            raise NetworkError(f"API stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"HTTP error during stream: {e}") from e

        raise NetworkError("Stream ended before message_stop")
