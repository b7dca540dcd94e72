"""Tests for delivery channels (terminal-event contract, SSE shaping, WebSocket)."""

from __future__ import annotations

import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import RecordingChannel
from streamchat.chat.channel import DONE_MARKER, QueueDeliveryChannel, WebSocketDeliveryChannel


async def _drain(channel: QueueDeliveryChannel) -> list[dict]:
    return [event async for event in channel.sse_events()]


class TestTerminalContract:

    @pytest.mark.asyncio
    async def test_complete_at_most_once(self):
        channel = RecordingChannel()
        assert await channel.on_complete() is True
        assert await channel.on_complete() is False
        assert await channel.on_error("late") is False
        assert channel.completed == 1
        assert channel.errors == []

    @pytest.mark.asyncio
    async def test_error_excludes_complete(self):
        channel = RecordingChannel()
        assert await channel.on_error(RuntimeError("boom")) is True
        assert await channel.on_complete() is False
        assert channel.errors == ["boom"]

    @pytest.mark.asyncio
    async def test_chunks_after_finish_are_dropped(self):
        channel = RecordingChannel()
        await channel.on_chunk("a")
        await channel.on_complete()
        await channel.on_chunk("b")
        assert channel.chunks == ["a"]

    @pytest.mark.asyncio
    async def test_disconnect_on_chunk_marks_channel(self):
        channel = RecordingChannel(fail_chunks_after=0)
        await channel.on_chunk("a")
        assert channel.disconnected.is_set()
        assert channel.finished
        assert await channel.on_complete() is False

    @pytest.mark.asyncio
    async def test_close_sends_no_terminal_event(self):
        channel = RecordingChannel()
        await channel.close()
        await channel.close()
        assert channel.closed == 1
        assert channel.completed == 0
        assert channel.errors == []


class TestQueueDeliveryChannel:

    @pytest.mark.asyncio
    async def test_message_then_done(self):
        channel = QueueDeliveryChannel()
        await channel.on_chunk("Hi")
        await channel.on_chunk(" there")
        await channel.on_complete()
        assert await _drain(channel) == [
            {"event": "message", "data": '{"content": "Hi"}'},
            {"event": "message", "data": '{"content": " there"}'},
            {"event": "done", "data": DONE_MARKER},
        ]
        assert not channel.disconnected.is_set()

    @pytest.mark.asyncio
    async def test_error_event(self):
        channel = QueueDeliveryChannel()
        await channel.on_error("invalid api key")
        assert await _drain(channel) == [
            {"event": "error", "data": '{"error": "invalid api key"}'},
        ]

    @pytest.mark.asyncio
    async def test_non_ascii_is_kept(self):
        channel = QueueDeliveryChannel()
        await channel.on_chunk("你好")
        await channel.close()
        events = await _drain(channel)
        assert events == [{"event": "message", "data": '{"content": "你好"}'}]

    @pytest.mark.asyncio
    async def test_close_ends_stream_without_terminal_event(self):
        channel = QueueDeliveryChannel()
        await channel.on_chunk("partial")
        await channel.close()
        events = await _drain(channel)
        assert [e["event"] for e in events] == ["message"]

    @pytest.mark.asyncio
    async def test_consumer_going_away_marks_disconnected(self):
        channel = QueueDeliveryChannel()
        stream = channel.sse_events()
        consumer = asyncio.create_task(stream.__anext__())
        await asyncio.sleep(0.01)
        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer
        await stream.aclose()
        assert channel.disconnected.is_set()


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise WebSocketDisconnect(code=1001)
        self.sent.append(data)


class TestWebSocketDeliveryChannel:

    @pytest.mark.asyncio
    async def test_frames_carry_session_id(self):
        ws = FakeWebSocket()
        channel = WebSocketDeliveryChannel(ws, "s1")
        await channel.open("g1")
        await channel.on_chunk("Hi")
        await channel.on_complete()
        assert ws.sent == [
            {"event": "started", "sessionId": "s1", "data": {"generationId": "g1"}},
            {"event": "message", "sessionId": "s1", "data": {"content": "Hi"}},
            {"event": "done", "sessionId": "s1", "data": DONE_MARKER},
        ]

    @pytest.mark.asyncio
    async def test_started_frame_goes_first(self):
        ws = FakeWebSocket()
        channel = WebSocketDeliveryChannel(ws, "s1")
        sender = asyncio.create_task(channel.on_chunk("early"))
        await asyncio.sleep(0.01)
        assert ws.sent == []

        await channel.open("g1")
        await sender
        assert [frame["event"] for frame in ws.sent] == ["started", "message"]

    @pytest.mark.asyncio
    async def test_close_keeps_socket_open(self):
        ws = FakeWebSocket()
        channel = WebSocketDeliveryChannel(ws, "s1")
        await channel.close()
        assert ws.sent == []
        assert channel.finished

    @pytest.mark.asyncio
    async def test_socket_gone_marks_disconnected(self):
        channel = WebSocketDeliveryChannel(FakeWebSocket(fail=True), "s1")
        await channel.open("g1")
        assert channel.disconnected.is_set()
        await channel.on_chunk("Hi")
        assert await channel.on_complete() is False


class FailingChannel(RecordingChannel):
    async def _send_chunk(self, text: str) -> None:
        raise RuntimeError("encoder broke")


class TestSendFailures:

    @pytest.mark.asyncio
    async def test_send_failure_propagates(self):
        channel = FailingChannel()
        with pytest.raises(RuntimeError, match="encoder broke"):
            await channel.on_chunk("a")
        assert not channel.disconnected.is_set()
        assert await channel.on_error("encoder broke") is True
        assert channel.errors == ["encoder broke"]
