"""One in-flight generation for one session."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from streamchat.models import GenerationState

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class GenerationHandle:
    session_id: str
    generation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: GenerationState = GenerationState.CREATED
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    buffer: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def text(self) -> str:
        return "".join(self.buffer)

    def _transition(self, new_state: GenerationState) -> bool:
        if self.state.is_terminal:
            return False
        logger.debug(
            "GENERATION_STATE | session=%s | generation=%s | %s -> %s",
            self.session_id, self.generation_id, self.state.value, new_state.value,
        )
        self.state = new_state
        return True

    def mark_running(self) -> bool:
        return self._transition(GenerationState.RUNNING)

    def mark_completed(self) -> bool:
        return self._transition(GenerationState.COMPLETED)

    def mark_failed(self, error: str) -> bool:
        if not self._transition(GenerationState.FAILED):
            return False
        self.error = error
        return True

    def cancel(self) -> bool:
        """Cancel the generation and discard its partial buffer.

        Returns False when the handle is already terminal.
        """
        was_running = self.state == GenerationState.RUNNING
        if not self._transition(GenerationState.CANCELLED):
            return False
        self.cancel_event.set()
        self.buffer.clear()
        # A task that has not started yet sees the Cancelled state and exits on its own.
        if (
            was_running
            and self.task is not None
            and not self.task.done()
            and self.task is not asyncio.current_task()
        ):
            self.task.cancel()
        return True

    async def wait(self) -> None:
        """Wait until the generation task has finished unwinding."""
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)

