"""In-memory per-session message history.

Each session maps to an immutable tuple of Message. Every mutation builds a
new tuple and swaps the dict entry in one step on the event loop, so:
- readers get a consistent snapshot (possibly stale, never torn)
- operations on different sessions never contend

Write discipline (single writer per session) is enforced one level up by the
orchestrator through the CancellationRegistry, not here.
"""

from __future__ import annotations

import logging

from streamchat.models import History, Message, Role

logger = logging.getLogger(__name__)


class ConversationStore:
    """Session id → History map owned by one orchestrator instance."""

    def __init__(self, system_prompt: str):
        self.system_prompt = system_prompt
        self._histories: dict[str, History] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._histories

    def __len__(self) -> int:
        return len(self._histories)

    def sessions(self) -> list[str]:
        return list(self._histories)

    def get(self, session_id: str) -> History:
        """Snapshot of a session's history (empty tuple if unknown)."""
        return self._histories.get(session_id, ())

    def get_or_create(self, session_id: str) -> History:
        """Return history, seeding it with the System message if absent."""
        history = self._histories.get(session_id)
        if not history:
            history = (Message(role=Role.SYSTEM, content=self.system_prompt, sequence=0),)
            self._histories[session_id] = history
            logger.info("HISTORY_CREATED | session=%s", session_id)
        return history

    def append(self, session_id: str, role: Role, content: str) -> Message:
        """Append a message with the next sequence number for the session."""
        history = self.get_or_create(session_id)
        message = Message(role=role, content=content, sequence=history[-1].sequence + 1)
        self._histories[session_id] = history + (message,)
        return message

    def replace(self, session_id: str, history: History) -> None:
        """Atomically swap the whole history for a session."""
        self._histories[session_id] = tuple(history)

    def remove(self, session_id: str) -> bool:
        removed = self._histories.pop(session_id, None) is not None
        if removed:
            logger.info("HISTORY_REMOVED | session=%s", session_id)
        return removed
