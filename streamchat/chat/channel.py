"""DeliveryChannel — transport-independent push sink for streamed output.

Contract:
- on_chunk(text)  dropped (logged) once the channel is finished; any send
                  failure other than a disconnect propagates to the caller
- on_complete()   at most once
- on_error(err)   at most once, mutually exclusive with on_complete
- close()         end the stream without a terminal event (cancel / timeout)
- disconnected    set by the transport when the client goes away; the
                  orchestrator watches it to stop upstream work early

Adapters:
- QueueDeliveryChannel buffers ChatStreamEvents in an asyncio.Queue; the SSE
  endpoint drains it via sse_events()
- WebSocketDeliveryChannel writes frames straight to an open socket
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator

from starlette.websockets import WebSocket, WebSocketDisconnect

from streamchat.errors import ChannelDisconnect
from streamchat.models import ChatStreamEvent

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"


class DeliveryChannel(ABC):
    """Base class enforcing the at-most-once terminal event contract."""

    def __init__(self):
        self.disconnected = asyncio.Event()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def mark_disconnected(self) -> None:
        if not self.disconnected.is_set():
            logger.info("CHANNEL_DISCONNECTED | channel=%s", self.__class__.__name__)
        self.disconnected.set()
        self._finished = True

    async def on_chunk(self, text: str) -> None:
        if self._finished:
            logger.debug("Chunk dropped, channel already closed (%d chars)", len(text))
            return
        try:
            await self._send_chunk(text)
        except ChannelDisconnect:
            self.mark_disconnected()

    async def on_complete(self) -> bool:
        if self._finished:
            return False
        self._finished = True
        try:
            await self._send_complete()
        except ChannelDisconnect:
            self.mark_disconnected()
            return False
        return True

    async def on_error(self, error: BaseException | str) -> bool:
        if self._finished:
            return False
        self._finished = True
        try:
            await self._send_error(str(error))
        except ChannelDisconnect:
            self.mark_disconnected()
            return False
        return True

    async def close(self) -> None:
        if self._finished:
            return
        self._finished = True
        await self._send_close()

    @abstractmethod
    async def _send_chunk(self, text: str) -> None: ...

    @abstractmethod
    async def _send_complete(self) -> None: ...

    @abstractmethod
    async def _send_error(self, message: str) -> None: ...

    @abstractmethod
    async def _send_close(self) -> None: ...


class QueueDeliveryChannel(DeliveryChannel):
    """Queue-backed channel drained by the HTTP transport."""

    def __init__(self, maxsize: int = 0):
        super().__init__()
        self._queue: asyncio.Queue[ChatStreamEvent | None] = asyncio.Queue(maxsize=maxsize)

    async def _send_chunk(self, text: str) -> None:
        await self._queue.put(ChatStreamEvent(event="message", data={"content": text}))

    async def _send_complete(self) -> None:
        await self._queue.put(ChatStreamEvent(event="done", data=DONE_MARKER))
        await self._queue.put(None)

    async def _send_error(self, message: str) -> None:
        await self._queue.put(ChatStreamEvent(event="error", data={"error": message}))
        await self._queue.put(None)

    async def _send_close(self) -> None:
        await self._queue.put(None)

    async def events(self) -> AsyncIterator[ChatStreamEvent]:
        """Yield events until the channel ends (None sentinel)."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def sse_events(self) -> AsyncIterator[dict]:
        """Events shaped for sse_starlette.EventSourceResponse.

        If the consumer stops before a terminal event (client disconnect,
        response cancelled), the channel is marked disconnected.
        """
        ended = False
        try:
            async for event in self.events():
                yield {"event": event.event, "data": _encode(event.data)}
            ended = True
        finally:
            if not ended:
                self.mark_disconnected()


def _encode(data) -> str:
    if isinstance(data, str):
        return data
    return json.dumps(data, ensure_ascii=False)


class WebSocketDeliveryChannel(DeliveryChannel):
    """Pushes frames straight to an open WebSocket.

    One socket carries many generations, so close() leaves the socket open.
    Generation frames wait until open() has sent the "started" frame.
    """

    def __init__(self, websocket: WebSocket, session_id: str):
        super().__init__()
        self.websocket = websocket
        self.session_id = session_id
        self._opened = asyncio.Event()

    async def open(self, generation_id: str) -> None:
        """Send the "started" frame, then release queued generation frames."""
        try:
            await self._write(ChatStreamEvent(event="started", data={"generationId": generation_id}))
        except ChannelDisconnect:
            self.mark_disconnected()
        finally:
            self._opened.set()

    async def _send(self, event: ChatStreamEvent) -> None:
        await self._opened.wait()
        await self._write(event)

    async def _write(self, event: ChatStreamEvent) -> None:
        frame = {"event": event.event, "sessionId": self.session_id, "data": event.data}
        try:
            await self.websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ChannelDisconnect(str(e) or "websocket closed") from e

    async def _send_chunk(self, text: str) -> None:
        await self._send(ChatStreamEvent(event="message", data={"content": text}))

    async def _send_complete(self) -> None:
        await self._send(ChatStreamEvent(event="done", data=DONE_MARKER))

    async def _send_error(self, message: str) -> None:
        await self._send(ChatStreamEvent(event="error", data={"error": message}))

    async def _send_close(self) -> None:
        return None
