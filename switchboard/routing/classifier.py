"""Message classifier -- one fast-tier call that names a MessageClass.

Classification only raises on caller cancellation. An empty or
unrecognised reply, a provider error or a timeout resolve to the fallback
class (ANALYSIS, the mid-cost tier), with ``fallback_reason`` saying
which case occurred.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time

from switchboard.errors import RequestCancelledError
from switchboard.llm.chat import ChatRequest, ChatService
from switchboard.llm.schemas import (
    CompletionResult,
    Message,
    ModelTier,
    TextBlock,
    TokenUsage,
)
from switchboard.routing.schemas import ClassificationResult, FallbackReason, MessageClass

logger = logging.getLogger(__name__)

CLASSIFICATION_SYSTEM_PROMPT = """\
You are a message classifier for a conversational assistant. Classify the \
user's message into exactly one of four categories so it can be routed to \
the right model.

Categories:
1. SIMPLE_TOOL - Basic tool invocations like recording an item, logging an event, simple lookups
2. ANALYSIS - Requests for data analysis, generating insights, understanding patterns, summarizing usage
3. PLANNING - Complex reasoning, creating plans, goal setting, multi-step strategies
4. CHITCHAT - Casual conversation, greetings, small talk, questions about capabilities

Respond with ONLY the category name (SIMPLE_TOOL, ANALYSIS, PLANNING, or CHITCHAT) \
on a single line. No explanation needed."""

FALLBACK_CLASS = MessageClass.ANALYSIS

_NON_CLASS_CHARS = re.compile(r"[^A-Z_]")


def parse_message_class(raw: str) -> MessageClass | None:
    """Normalise a classifier reply and match it against MessageClass."""
    normalized = _NON_CLASS_CHARS.sub("", raw.strip().upper())
    try:
        return MessageClass(normalized)
    except ValueError:
        return None


def _discard_late_result(task: asyncio.Task) -> None:
    # Mark the loser's outcome as retrieved; its usage is never counted
    if not task.cancelled():
        task.exception()


class Classifier:
    """Races a classification call against a timeout."""

    def __init__(
        self,
        chat: ChatService,
        *,
        timeout_ms: int = 500,
        max_tokens: int = 20,
        fallback: MessageClass = FALLBACK_CLASS,
    ) -> None:
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        self._chat = chat
        self._timeout_s = timeout_ms / 1000
        self._max_tokens = max_tokens
        self._fallback = fallback

    async def classify(
        self, text: str, cancel: asyncio.Event | None = None
    ) -> ClassificationResult:
        """Classify one message.

        Cancellation is not a fallback case: when ``cancel`` fires first,
        RequestCancelledError propagates to the caller.
        """
        start = time.monotonic()
        call = asyncio.ensure_future(
            self._chat.chat(
                ChatRequest(
                    messages=[Message.user(text)],
                    model=ModelTier.FAST,
                    system=CLASSIFICATION_SYSTEM_PROMPT,
                    max_tokens=self._max_tokens,
                    temperature=0.0,
                    cancel=cancel,
                )
            )
        )

        try:
            done, _ = await asyncio.wait({call}, timeout=self._timeout_s)
        except asyncio.CancelledError:
            call.cancel()
            raise

        if not done:
            call.cancel()
            call.add_done_callback(_discard_late_result)
            logger.warning(
                "Classification timed out after %dms, using fallback %s",
                round(self._timeout_s * 1000),
                self._fallback,
            )
            return self._fallback_result(TokenUsage.zero(), start, "timeout")

        try:
            response = call.result()
        except RequestCancelledError:
            logger.info("Classification cancelled by caller")
            raise
        except Exception as e:
            logger.error("Classification failed, using fallback %s: %s", self._fallback, e)
            return self._fallback_result(TokenUsage.zero(), start, "error")

        return self._interpret(response, start)

    def _interpret(self, response: CompletionResult, start: float) -> ClassificationResult:
        first_text = next(
            (block.text for block in response.content if isinstance(block, TextBlock)),
            "",
        )
        if not first_text.strip():
            logger.warning("Empty classification response, using fallback %s", self._fallback)
            return self._fallback_result(response.usage, start, "empty")

        message_class = parse_message_class(first_text)
        if message_class is None:
            logger.warning(
                "Unknown classification %r, using fallback %s", first_text, self._fallback
            )
            return self._fallback_result(response.usage, start, "unrecognized")

        latency_ms = _elapsed_ms(start)
        logger.debug("Classified message as %s in %.2fms", message_class, latency_ms)
        return ClassificationResult(
            message_class=message_class,
            router_usage=response.usage,
            latency_ms=latency_ms,
        )

    def _fallback_result(
        self, usage: TokenUsage, start: float, reason: FallbackReason
    ) -> ClassificationResult:
        return ClassificationResult(
            message_class=self._fallback,
            router_usage=usage,
            latency_ms=_elapsed_ms(start),
            fallback_reason=reason,
        )


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000
