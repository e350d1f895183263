"""LLM layer -- completion transport, retry policy and chat orchestration.

Public API:
    CompletionClient - Messages API transport (buffered + streamed)
    ChatService      - chat / stream_chat / execute_tool_loop / stream_tool_loop
    RetryPolicy      - bounded exponential backoff

Schemas:
    Message, TextBlock, ToolUseBlock, ToolResultBlock, ToolDefinition,
    TokenUsage, CompletionResult, ModelTier
"""

from switchboard.llm.chat import (
    ChatRequest,
    ChatService,
    ChatStream,
    TextEvent,
    ToolCallResult,
    ToolLoopRequest,
    ToolLoopResult,
    ToolLoopStream,
    ToolResultEvent,
    ToolUseEvent,
)
from switchboard.llm.client import CompletionClient, CompletionRequest
from switchboard.llm.retry import NO_RETRY, RetryPolicy, retry_async
from switchboard.llm.schemas import (
    CompletionResult,
    ContentBlock,
    Message,
    ModelTier,
    TextBlock,
    TokenUsage,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)

__all__ = [
    "NO_RETRY",
    "ChatRequest",
    "ChatService",
    "ChatStream",
    "CompletionClient",
    "CompletionRequest",
    "CompletionResult",
    "ContentBlock",
    "Message",
    "ModelTier",
    "RetryPolicy",
    "TextBlock",
    "TextEvent",
    "TokenUsage",
    "ToolCallResult",
    "ToolDefinition",
    "ToolLoopRequest",
    "ToolLoopResult",
    "ToolLoopStream",
    "ToolResultBlock",
    "ToolUseBlock",
    "ToolUseEvent",
    "retry_async",
]
