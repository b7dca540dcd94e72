"""RetryingInferenceClient — bounded exponential backoff around the backend.

Policy:
- RetryableBackendError → retry, up to max_attempts total attempts,
  sleeping backoff_base ** attempt seconds between attempts (2s, 4s).
  Exhausting the attempts raises FatalBackendError("exhausted retries: ...").
- FatalBackendError → no retry, propagated immediately.
- Streaming retries only until the first element has been yielded. A failure
  after that is terminal for the generation; nothing is replayed.

Backoff uses asyncio.sleep, so waiting on one session never blocks another.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable

from streamchat import metrics
from streamchat.errors import FatalBackendError, RetryableBackendError
from streamchat.llm.provider import InferenceBackend
from streamchat.models import InferenceResult, ModelParams

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0


class RetryingInferenceClient:
    """Wraps an InferenceBackend with the retry policy above."""

    def __init__(
        self,
        backend: InferenceBackend,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.backend = backend
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base ** attempt

    async def call(self, messages: list[dict], params: ModelParams) -> InferenceResult:
        """Single-shot backend call with retry."""
        last_error: RetryableBackendError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.backend.submit(messages, params)
            except RetryableBackendError as e:
                last_error = e
                await self._after_failure(attempt, e, "call")
            except FatalBackendError as e:
                logger.error("BACKEND_FATAL | mode=call | attempt=%d | %s", attempt, e)
                metrics.backend_fatal_total.labels(mode="call").inc()
                raise
        raise self._exhausted(last_error, "call") from last_error

    async def stream_call(
        self, messages: list[dict], params: ModelParams,
    ) -> AsyncIterator[InferenceResult]:
        """Streaming backend call. Retries only before the first element."""
        last_error: RetryableBackendError | None = None
        for attempt in range(1, self.max_attempts + 1):
            stream = self.backend.submit_stream(messages, params)
            emitted = False
            try:
                async for result in stream:
                    emitted = True
                    yield result
                return
            except RetryableBackendError as e:
                if emitted:
                    logger.error("BACKEND_STREAM_BROKEN | attempt=%d | %s", attempt, e)
                    metrics.backend_fatal_total.labels(mode="stream").inc()
                    raise FatalBackendError(f"stream interrupted: {e}") from e
                last_error = e
                await self._after_failure(attempt, e, "stream")
            except FatalBackendError as e:
                logger.error("BACKEND_FATAL | mode=stream | attempt=%d | %s", attempt, e)
                metrics.backend_fatal_total.labels(mode="stream").inc()
                raise
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
        raise self._exhausted(last_error, "stream") from last_error

    async def _after_failure(self, attempt: int, error: Exception, mode: str) -> None:
        if attempt >= self.max_attempts:
            return
        delay = self.backoff_delay(attempt)
        logger.warning(
            "BACKEND_RETRY | mode=%s | attempt=%d/%d | delay=%.1fs | %s",
            mode, attempt, self.max_attempts, delay, error,
        )
        metrics.backend_retries_total.labels(mode=mode).inc()
        await self._sleep(delay)

    def _exhausted(self, last_error: Exception | None, mode: str) -> FatalBackendError:
        logger.error(
            "BACKEND_EXHAUSTED | mode=%s | attempts=%d | last_error=%s",
            mode, self.max_attempts, last_error,
        )
        metrics.backend_fatal_total.labels(mode=mode).inc()
        return FatalBackendError(f"exhausted retries: {last_error}")
