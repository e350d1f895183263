"""Tests for ChatService.chat and ChatService.stream_chat."""

import asyncio

import pytest

from switchboard.errors import (
    AuthenticationError,
    BadRequestError,
    NetworkError,
    RequestCancelledError,
    ServerError,
)
from switchboard.llm.chat import ChatRequest, TextEvent, ToolUseEvent
from switchboard.llm.schemas import (
    Message,
    ModelTier,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from tests.conftest import ScriptedClient, make_chat, text_reply, tool_reply


def _hello(**kwargs) -> ChatRequest:
    return ChatRequest(messages=[Message.user("Hello")], **kwargs)


# ---------------------------------------------------------------------------
# Buffered chat
# ---------------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_returns_result_and_maps_tier(self):
        client = ScriptedClient(text_reply("Hi there"))
        chat = make_chat(client, max_tokens=1000, temperature=0.5)

        result = await chat.chat(_hello(model=ModelTier.REASONING))

        assert result.text == "Hi there"
        request = client.requests[0]
        assert request.model == "test-reasoning"
        assert request.max_tokens == 1000
        assert request.temperature == 0.5

    @pytest.mark.asyncio
    async def test_request_overrides_defaults(self):
        client = ScriptedClient(text_reply("ok"))
        chat = make_chat(client)

        await chat.chat(_hello(max_tokens=20, temperature=0.0, system="Classify."))

        request = client.requests[0]
        assert request.max_tokens == 20
        assert request.temperature == 0.0
        assert request.system == "Classify."

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        client = ScriptedClient(ServerError("overloaded"), NetworkError("reset"), text_reply("ok"))
        result = await make_chat(client).chat(_hello())
        assert result.text == "ok"
        assert client.complete_calls == 3

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self):
        client = ScriptedClient(AuthenticationError("bad key"), text_reply("unused"))
        with pytest.raises(AuthenticationError):
            await make_chat(client).chat(_hello())
        assert client.complete_calls == 1

    @pytest.mark.asyncio
    async def test_on_usage_called_once(self):
        seen = []
        client = ScriptedClient(text_reply("ok", input_tokens=7, output_tokens=3))
        await make_chat(client).chat(_hello(on_usage=seen.append))
        assert [(u.input_tokens, u.output_tokens) for u in seen] == [(7, 3)]

    @pytest.mark.asyncio
    async def test_dangling_tool_result_rejected_before_network(self):
        client = ScriptedClient(text_reply("unused"))
        messages = [
            Message.user("Hi"),
            Message(role="user", content=[ToolResultBlock(tool_use_id="toolu_missing", content="x")]),
        ]
        with pytest.raises(BadRequestError, match="toolu_missing"):
            await make_chat(client).chat(ChatRequest(messages=messages))
        assert client.complete_calls == 0

    @pytest.mark.asyncio
    async def test_tool_result_after_tool_use_accepted(self):
        client = ScriptedClient(text_reply("done"))
        messages = [
            Message.user("Weather?"),
            Message(role="assistant", content=[ToolUseBlock(id="t1", name="weather", input={})]),
            Message(role="user", content=[ToolResultBlock(tool_use_id="t1", content="sunny")]),
        ]
        result = await make_chat(client).chat(ChatRequest(messages=messages))
        assert result.text == "done"

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self):
        with pytest.raises(BadRequestError):
            await make_chat(ScriptedClient()).chat(ChatRequest(messages=[]))

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()
        client = ScriptedClient(text_reply("unused"))
        with pytest.raises(RequestCancelledError):
            await make_chat(client).chat(_hello(cancel=cancel))
        assert client.complete_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_during_call(self):
        cancel = asyncio.Event()
        client = ScriptedClient(text_reply("late"), delay=5.0)
        chat = make_chat(client)

        task = asyncio.ensure_future(chat.chat(_hello(cancel=cancel)))
        await asyncio.sleep(0.01)
        cancel.set()

        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(task, timeout=1.0)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreamChat:
    @pytest.mark.asyncio
    async def test_text_events_in_order(self):
        client = ScriptedClient(text_reply("Hello world, streamed"))
        stream = make_chat(client).stream_chat(_hello())

        events = [event async for event in stream]

        assert all(isinstance(e, TextEvent) for e in events)
        assert "".join(e.text for e in events) == "Hello world, streamed"
        assert len(events) > 1

    @pytest.mark.asyncio
    async def test_tool_use_event_after_block_stop(self):
        client = ScriptedClient(
            tool_reply(("toolu_1", "weather", {"city": "Paris", "units": "metric"}), text="Checking")
        )
        events = [e async for e in make_chat(client).stream_chat(_hello())]

        tool_events = [e for e in events if isinstance(e, ToolUseEvent)]
        assert len(tool_events) == 1
        assert tool_events[0].tool_use == ToolUseBlock(
            id="toolu_1", name="weather", input={"city": "Paris", "units": "metric"}
        )
        # Text arrives before the tool call it precedes
        assert isinstance(events[0], TextEvent)
        assert events[-1] is tool_events[0]

    @pytest.mark.asyncio
    async def test_result_returns_completion(self):
        client = ScriptedClient(text_reply("All done", input_tokens=11, output_tokens=4))
        stream = make_chat(client).stream_chat(_hello())

        result = await stream.result()

        assert result.content == [TextBlock(text="All done")]
        assert result.stop_reason == "end_turn"
        assert result.usage.input_tokens == 11

    @pytest.mark.asyncio
    async def test_hooks_fire_in_order(self):
        calls = []
        client = ScriptedClient(tool_reply(("t1", "echo", {"m": "x"}), text="Hi"))
        stream = make_chat(client).stream_chat(
            _hello(
                on_text=lambda t: calls.append(("text", t)),
                on_tool_use=lambda tu: calls.append(("tool", tu.id)),
                on_usage=lambda u: calls.append(("usage", u.output_tokens)),
            )
        )
        await stream.result()

        kinds = [c[0] for c in calls]
        assert kinds[0] == "text"
        assert kinds.count("usage") == 1
        assert kinds[-1] == "usage"
        assert ("tool", "t1") in calls
        assert "".join(c[1] for c in calls if c[0] == "text") == "Hi"

    @pytest.mark.asyncio
    async def test_each_call_opens_fresh_stream(self):
        client = ScriptedClient(text_reply("one"), text_reply("two"))
        chat = make_chat(client)

        first = await chat.stream_chat(_hello()).result()
        second = await chat.stream_chat(_hello()).result()

        assert (first.text, second.text) == ("one", "two")
        assert client.stream_calls == 2

    @pytest.mark.asyncio
    async def test_stream_not_restartable(self):
        stream = make_chat(ScriptedClient(text_reply("once"))).stream_chat(_hello())
        await stream.result()
        assert [e async for e in stream] == []

    @pytest.mark.asyncio
    async def test_stream_open_retried(self):
        client = ScriptedClient(ServerError("overloaded"), text_reply("recovered"))
        result = await make_chat(client).stream_chat(_hello()).result()
        assert result.text == "recovered"
        assert client.stream_calls == 2

    @pytest.mark.asyncio
    async def test_validation_happens_on_call(self):
        client = ScriptedClient()
        messages = [Message(role="user", content=[ToolResultBlock(tool_use_id="nope", content="x")])]
        with pytest.raises(BadRequestError):
            make_chat(client).stream_chat(ChatRequest(messages=messages))
        assert client.stream_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_stops_events(self):
        cancel = asyncio.Event()
        client = ScriptedClient(text_reply("a fairly long streamed answer"))
        stream = make_chat(client).stream_chat(_hello(cancel=cancel))

        received = []
        with pytest.raises(RequestCancelledError):
            async for event in stream:
                received.append(event)
                cancel.set()

        assert len(received) == 1
        assert client.closed_streams == 1
