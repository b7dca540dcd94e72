"""Pytest configuration for streamchat tests.

Sets up a minimal environment so unit tests never reach a real inference
backend or file storage service.
"""

from __future__ import annotations

import asyncio
import os

import pytest

# Set minimal environment variables for Settings (read at import time)
os.environ.setdefault("STREAMCHAT_MODEL", "openai/test-model")
os.environ.setdefault("STREAMCHAT_API_KEY", "test-key")
os.environ.setdefault("STREAMCHAT_STORAGE_DIR", "/tmp/streamchat-test-uploads")

from streamchat.chat.channel import DeliveryChannel  # noqa: E402
from streamchat.config import Settings  # noqa: E402
from streamchat.errors import ChannelDisconnect  # noqa: E402
from streamchat.models import InferenceResult  # noqa: E402


class FakeBackend:
    """Scripted InferenceBackend.

    Each call pops the next script entry:
    - an Exception instance → raised when the call starts
    - a list of str / Exception → streamed in order (exceptions raised mid-stream)
    - a str → single-shot answer (or one-chunk stream)
    When the script runs out, the last entry is reused.
    """

    def __init__(self, *script, delay: float = 0.0, chunk_delay: float = 0.0):
        self.script = list(script) or [["ok"]]
        self.delay = delay
        self.chunk_delay = chunk_delay
        self.calls: list[list[dict]] = []
        self.closed = 0

    def _next(self):
        if len(self.script) > 1:
            return self.script.pop(0)
        return self.script[0]

    async def submit(self, messages, params):
        self.calls.append(list(messages))
        entry = self._next()
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(entry, Exception):
            raise entry
        text = "".join(entry) if isinstance(entry, list) else entry
        return InferenceResult(text=text, finish_reason="stop", model=params.model)

    async def submit_stream(self, messages, params):
        self.calls.append(list(messages))
        entry = self._next()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(entry, Exception):
                raise entry
            for item in entry if isinstance(entry, list) else [entry]:
                if isinstance(item, Exception):
                    raise item
                if self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)
                yield InferenceResult(text=item, model=params.model)
        finally:
            self.closed += 1


class RecordingChannel(DeliveryChannel):
    """DeliveryChannel that records everything it receives."""

    def __init__(self, fail_chunks_after: int | None = None):
        super().__init__()
        self.chunks: list[str] = []
        self.completed = 0
        self.errors: list[str] = []
        self.closed = 0
        self.fail_chunks_after = fail_chunks_after
        self.done = asyncio.Event()

    async def _send_chunk(self, text: str) -> None:
        if self.fail_chunks_after is not None and len(self.chunks) >= self.fail_chunks_after:
            raise ChannelDisconnect("client went away")
        self.chunks.append(text)

    async def _send_complete(self) -> None:
        self.completed += 1
        self.done.set()

    async def _send_error(self, message: str) -> None:
        self.errors.append(message)
        self.done.set()

    async def _send_close(self) -> None:
        self.closed += 1
        self.done.set()


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        system_prompt="You are a test assistant.",
        max_history_tokens=6000,
        fallback_chunk_delay_s=0.0,
        generation_timeout_s=10.0,
        cancel_grace_s=2.0,
        stream_idle_timeout_s=5.0,
    )


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()
