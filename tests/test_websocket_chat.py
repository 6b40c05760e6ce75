"""Tests for the WebSocket chat endpoint."""

import json
from unittest.mock import patch

from slop.core.errors import ProviderAuthError, UnsupportedProviderError
from slop.models.conversation import Role
from slop.services.llm.base import ToolCall
from slop.services.store import ConversationStore
from tests.conftest import Step, test_engine, text_step, tool_step


def _drain(ws):
    """Collect frames until the turn's final frame (end, cancelled or error)."""
    frames = []
    while True:
        frame = json.loads(ws.receive_text())
        frames.append(frame)
        if frame["type"] in ("end", "cancelled", "error"):
            return frames


def _text(frames):
    return "".join(f["data"] for f in frames if f["type"] == "text")


def test_websocket_connect_disconnect(client):
    """Basic connection and clean disconnect."""
    with client.websocket_connect("/api/chat/ws"):
        pass  # just connect and disconnect


def test_websocket_streams_tokens(client):
    """Send a message, receive streamed tokens, done and end frames."""
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("hello")
        frames = _drain(ws)

    assert _text(frames) == "Hello from agent"
    assert [f["type"] for f in frames][-2:] == ["done", "end"]
    end = frames[-1]
    assert len(end["thread_id"]) == 36
    assert end["tool_cycles"] == 0


def test_websocket_messages_persisted(client):
    """Human and assistant messages should be saved as a chain."""
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(json.dumps({"content": "save me"}))
        end = _drain(ws)[-1]

    context = ConversationStore(test_engine).get_messages(end["thread_id"], end["message_id"])
    assert [(m.role, m.content) for m in context] == [
        (Role.HUMAN, "save me"),
        (Role.ASSISTANT, "Hello from agent"),
    ]


def test_websocket_multiple_messages_same_thread(client):
    """Multiple messages in one session continue the same thread."""
    with client.websocket_connect("/api/chat/ws") as ws:
        ends = []
        for msg in ["first", "second", "third"]:
            ws.send_text(msg)
            ends.append(_drain(ws)[-1])

    assert len({e["thread_id"] for e in ends}) == 1
    context = ConversationStore(test_engine).get_messages(ends[-1]["thread_id"], ends[-1]["message_id"])
    assert len(context) == 6


def test_websocket_resume_thread_by_prefix(client):
    """Sending a thread_id prefix continues an existing thread."""
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("initial message")
        thread_id = _drain(ws)[-1]["thread_id"]

    # Connect again referencing the same thread
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(json.dumps({"content": "continuing", "thread_id": thread_id[:8]}))
        end = _drain(ws)[-1]

    assert end["thread_id"] == thread_id
    assert ConversationStore(test_engine).count_messages(thread_id) == 4


def test_websocket_unknown_thread(client):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(json.dumps({"content": "hi", "thread_id": "no-such-thread"}))
        frame = json.loads(ws.receive_text())

    assert frame["type"] == "error"
    assert frame["error"] == "NotFoundError"


def test_websocket_tool_call_frames(client, provider, echo_tool):
    provider.steps = [
        tool_step(ToolCall(id="call_1", name="echo", arguments='{"text":"ping"}')),
        text_step("Echoed."),
    ]
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("use the tool")
        frames = _drain(ws)

    assert frames[0] == {"type": "tool_call_start", "id": "call_1", "name": "echo"}
    assert frames[1] == {"type": "tool_call_chunk", "data": "\n  text: ping"}
    assert _text(frames) == "Echoed."
    assert frames[-1]["tool_cycles"] == 1
    assert echo_tool.calls == [{"text": "ping"}]


def test_websocket_provider_error(client, provider):
    provider.steps = [ProviderAuthError("bad key")]
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("hello")
        frame = _drain(ws)[-1]
        assert frame == {"type": "error", "error": "ProviderAuthError", "detail": "bad key"}

        # The session survives and the next turn works
        ws.send_text("again")
        assert _drain(ws)[-1]["type"] == "end"


def test_websocket_cancel(client, provider):
    provider.steps = [Step(text_step("partial").response, [b"partial"], hang_after_chunks=True)]
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("tell me a long story")
        first = json.loads(ws.receive_text())
        assert first == {"type": "text", "data": "partial"}

        ws.send_text(json.dumps({"type": "cancel"}))
        frame = _drain(ws)[-1]

    assert frame["type"] == "cancelled"
    messages = ConversationStore(test_engine).get_messages(frame["thread_id"])
    assert [(m.role, m.content) for m in messages] == [(Role.HUMAN, "tell me a long story")]


def test_websocket_unusable_provider_sends_error(client):
    failure = UnsupportedProviderError("Unsupported provider: carrier-pigeon")
    with patch("slop.services.agent.get_llm_provider", side_effect=failure):
        with client.websocket_connect("/api/chat/ws") as ws:
            frame = json.loads(ws.receive_text())

    assert frame == {
        "type": "error",
        "error": "UnsupportedProviderError",
        "detail": "Unsupported provider: carrier-pigeon",
    }
