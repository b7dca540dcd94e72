"""Error taxonomy for chat orchestration.

- ChatValidationError    → rejected synchronously, never retried
- RetryableBackendError  → transient backend fault, retried with backoff
- FatalBackendError      → surfaced once to the client, generation fails
- ChannelDisconnect      → client went away, treated as an implicit cancel
- GenerationCancelled    → non-streaming caller whose generation was cancelled
"""

from __future__ import annotations


class StreamChatError(Exception):
    """Base class for all streamchat errors."""


class ChatValidationError(StreamChatError):
    """Request is malformed (empty question, missing session id, ...)."""


class BackendError(StreamChatError):
    """Inference backend call failed."""


class RetryableBackendError(BackendError):
    """Transport or generic API fault that may succeed on retry."""


class FatalBackendError(BackendError):
    """Bad credentials, invalid input or exhausted retries."""


class ChannelDisconnect(StreamChatError):
    """Delivery channel was closed by the client or the transport."""


class GenerationCancelled(StreamChatError):
    """Generation ended as Cancelled (stop request, replacement or timeout)."""
