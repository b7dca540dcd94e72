"""Shared data models: conversation messages, backend params, API schemas."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """Single conversation message. Immutable once stored."""
    role: Role
    content: str
    sequence: int

    def to_llm(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


# Whole-session history snapshot. Tuples are swapped, never mutated in place.
History = tuple[Message, ...]


class GenerationState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            GenerationState.COMPLETED,
            GenerationState.CANCELLED,
            GenerationState.FAILED,
        )


# ---------------------------------------------------------------------------
# Inference backend
# ---------------------------------------------------------------------------

@dataclass
class ModelParams:
    """Parameters for one backend call."""
    model: str
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 4096
    enable_search: bool = False
    api_base: str | None = None
    api_key: str | None = None
    timeout: float | None = None


@dataclass(frozen=True)
class InferenceResult:
    """One backend result: a full answer or one incremental stream element."""
    text: str
    finish_reason: str | None = None
    model: str | None = None


# ---------------------------------------------------------------------------
# API schemas
# ---------------------------------------------------------------------------

class ChatOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enable_search: bool = Field(default=False, alias="enableSearch")


class ChatRequest(BaseModel):
    """Chat request from the browser (SSE, WebSocket or plain JSON)."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(default="", alias="sessionId")
    question: str = ""
    options: ChatOptions = Field(default_factory=ChatOptions)


class StopRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(default="", alias="sessionId")
    generation_id: str | None = Field(default=None, alias="generationId")


class SessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(default="", alias="sessionId")


class ChatStreamEvent(BaseModel):
    """Event pushed to the client transport."""
    event: str              # "message" | "done" | "error"
    data: Any = None
    # data examples:
    #   event=message: {"content": "..."}
    #   event=done:    "[DONE]"
    #   event=error:   {"error": "..."}


class MessageOut(BaseModel):
    role: str
    content: str
    sequence: int

    @classmethod
    def from_message(cls, message: Message) -> MessageOut:
        return cls(role=message.role.value, content=message.content, sequence=message.sequence)
