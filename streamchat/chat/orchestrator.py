"""StreamOrchestrator — session-scoped streaming chat generations.

Per generation:
1. Validate (sync, before any state changes)
2. Register a GenerationHandle (cancels the session's previous one)
3. Append the User message (history created lazily), compact history
4. Stream from the backend (or a canned answer), forwarding chunks in order
5. On natural completion: commit the Assistant message, deregister, done

States: created → running → completed | cancelled | failed (terminal).

A cancelled generation discards its buffer and never commits a partial
Assistant message. A failed generation reports exactly one error event.
A Fatal failure leaves the already-appended User message in history with no
Assistant reply; it is not rolled back.

Cancellation sources all go through CancellationRegistry.cancel:
- explicit stop request
- channel disconnect (watched per generation)
- a newer generation for the same session (replace-and-cancel)
The global per-generation timeout also forces Cancelled and closes the channel.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from typing import AsyncIterator, Awaitable, Callable, Coroutine

from streamchat import metrics
from streamchat.chat.channel import DeliveryChannel
from streamchat.chat.compactor import compact, estimate_tokens
from streamchat.chat.fallback import CANNED_RESPONSES, CannedResponse, find_canned, split_chunks
from streamchat.chat.handle import GenerationHandle
from streamchat.chat.registry import CancellationRegistry
from streamchat.chat.store import ConversationStore
from streamchat.config import Settings, settings as default_settings
from streamchat.errors import ChatValidationError, FatalBackendError, GenerationCancelled
from streamchat.llm.provider import build_params
from streamchat.llm.retry import RetryingInferenceClient
from streamchat.models import ChatOptions, GenerationState, History, InferenceResult, Role
from streamchat.storage import FileStorage

logger = logging.getLogger(__name__)


class StreamOrchestrator:
    """Owns the conversation store and the cancellation registry."""

    def __init__(
        self,
        client: RetryingInferenceClient,
        cfg: Settings | None = None,
        store: ConversationStore | None = None,
        registry: CancellationRegistry | None = None,
        storage: FileStorage | None = None,
        canned: tuple[CannedResponse, ...] = CANNED_RESPONSES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = cfg or default_settings
        self.client = client
        self.store = store or ConversationStore(self.settings.system_prompt)
        self.registry = registry or CancellationRegistry()
        self.storage = storage
        self.canned = canned
        self._sleep = sleep
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate(self, session_id: str, question: str) -> None:
        if not session_id or not session_id.strip():
            raise ChatValidationError("sessionId is required")
        if not question or not question.strip():
            raise ChatValidationError("question must not be empty")
        budget = self.settings.max_history_tokens - estimate_tokens(self.settings.system_prompt)
        if estimate_tokens(question) > budget:
            raise ChatValidationError(
                f"question too long: ~{estimate_tokens(question)} tokens, budget {budget}"
            )

    async def start(
        self,
        session_id: str,
        question: str,
        channel: DeliveryChannel,
        options: ChatOptions | None = None,
    ) -> GenerationHandle:
        """Start a streaming generation. Returns once the task is scheduled."""
        self.validate(session_id, question)
        options = options or ChatOptions()

        handle = GenerationHandle(session_id=session_id)
        await self.registry.set(session_id, handle)

        canned = find_canned(question, self.canned)
        source = "canned" if canned else "backend"
        logger.info(
            "CHAT_START | session=%s | generation=%s | source=%s | search=%s | question_len=%d",
            session_id, handle.generation_id, source, options.enable_search, len(question),
        )
        handle.task = asyncio.create_task(
            self._run(handle, self._stream(handle, question, channel, options, canned), channel, source),
            name=f"generation-{handle.generation_id[:8]}",
        )
        return handle

    async def ask(
        self,
        session_id: str,
        question: str,
        options: ChatOptions | None = None,
    ) -> str:
        """Non-streaming chat: returns the full answer."""
        self.validate(session_id, question)
        options = options or ChatOptions()

        handle = GenerationHandle(session_id=session_id)
        await self.registry.set(session_id, handle)
        canned = find_canned(question, self.canned)
        source = "canned" if canned else "backend"
        logger.info("CHAT_ASK | session=%s | generation=%s", session_id, handle.generation_id)
        handle.task = asyncio.create_task(
            self._run(handle, self._answer(handle, question, options, canned), None, source),
            name=f"ask-{handle.generation_id[:8]}",
        )

        try:
            await asyncio.wait({handle.task})
        except asyncio.CancelledError:
            await self.registry.cancel(session_id, handle.generation_id)
            raise

        if handle.state == GenerationState.COMPLETED:
            return handle.text
        if handle.state == GenerationState.CANCELLED:
            raise GenerationCancelled(f"generation {handle.generation_id} was cancelled")
        raise FatalBackendError(handle.error or "generation failed")

    async def cancel(self, session_id: str, generation_id: str | None = None) -> bool:
        """Cancel the session's in-flight generation. Unknown session → no-op."""
        handle = await self.registry.cancel(session_id, generation_id)
        if handle is None:
            return False
        logger.info("CHAT_CANCELLED | session=%s | generation=%s", session_id, handle.generation_id)
        if handle.task is not None and handle.task is not asyncio.current_task():
            await asyncio.wait({handle.task}, timeout=self.settings.cancel_grace_s)
        return True

    async def clear(self, session_id: str) -> bool:
        """Cancel in-flight work, drop history, schedule file cleanup."""
        if not session_id or not session_id.strip():
            raise ChatValidationError("sessionId is required")
        await self.cancel(session_id)
        removed = self.store.remove(session_id)
        if self.storage is not None:
            self._spawn(self._delete_files(session_id))
        logger.info("CHAT_CLEARED | session=%s | had_history=%s", session_id, removed)
        return removed

    def create_session(self) -> str:
        session_id = f"s-{uuid.uuid4().hex}"
        self.store.get_or_create(session_id)
        return session_id

    def history(self, session_id: str) -> History:
        return self.store.get(session_id)

    def active_generations(self) -> int:
        return self.registry.active_count()

    async def shutdown(self) -> None:
        handles = await self.registry.cancel_all()
        tasks = [h.task for h in handles if h.task is not None]
        tasks.extend(self._background)
        if tasks:
            await asyncio.wait(tasks, timeout=self.settings.cancel_grace_s)
        if self.storage is not None:
            await self.storage.close()
        logger.info("Orchestrator shut down (%d generations cancelled)", len(handles))

    # ------------------------------------------------------------------
    # Generation task
    # ------------------------------------------------------------------

    async def _run(
        self,
        handle: GenerationHandle,
        work: Coroutine,
        channel: DeliveryChannel | None,
        source: str,
    ) -> None:
        """Top-level wrapper: every outcome ends in a terminal state."""
        if not handle.mark_running():
            # Replaced or stopped before the task got scheduled.
            work.close()
            if channel is not None:
                await channel.close()
            return

        started = time.monotonic()
        watcher = (
            asyncio.create_task(self._watch_disconnect(handle, channel))
            if channel is not None else None
        )
        try:
            await asyncio.wait_for(work, timeout=self.settings.generation_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "CHAT_TIMEOUT | session=%s | generation=%s | after=%.0fs",
                handle.session_id, handle.generation_id, self.settings.generation_timeout_s,
            )
            handle.cancel()
            await self.registry.remove(handle.session_id, handle)
            if channel is not None:
                await channel.close()
        except asyncio.CancelledError:
            # Cancelled via the registry (state already Cancelled) or from
            # outside (shutdown). Either way nothing is committed.
            if handle.cancel():
                await self.registry.remove(handle.session_id, handle)
            if channel is not None and not channel.disconnected.is_set():
                await channel.close()
        except Exception as e:
            logger.error(
                "CHAT_FAILED | session=%s | generation=%s | %s: %s",
                handle.session_id, handle.generation_id, type(e).__name__, e,
            )
            if handle.mark_failed(str(e)):
                await self.registry.remove(handle.session_id, handle)
                if channel is not None:
                    await channel.on_error(e)
        finally:
            if watcher is not None:
                watcher.cancel()
            outcome = handle.state.value
            metrics.generations_total.labels(outcome=outcome, source=source).inc()
            metrics.generation_duration.labels(outcome=outcome).observe(time.monotonic() - started)

    async def _stream(
        self,
        handle: GenerationHandle,
        question: str,
        channel: DeliveryChannel,
        options: ChatOptions,
        canned: CannedResponse | None,
    ) -> None:
        messages = self._prepare(handle.session_id, question)
        if canned is not None:
            stream = self._canned_stream(handle, canned)
        else:
            params = build_params(self.settings, enable_search=options.enable_search)
            stream = self.client.stream_call(messages, params)

        chunk_count = 0
        async with contextlib.aclosing(stream):
            async for result in stream:
                if handle.cancel_event.is_set():
                    break
                if not result.text:
                    continue
                # Send failures propagate; only delivered text is buffered.
                await channel.on_chunk(result.text)
                if channel.disconnected.is_set() or handle.cancel_event.is_set():
                    break
                handle.buffer.append(result.text)
                chunk_count += 1

        if channel.disconnected.is_set():
            await self.registry.cancel(handle.session_id, handle.generation_id)
            return
        if await self._commit(handle):
            logger.info(
                "CHAT_DONE | session=%s | generation=%s | chunks=%d | chars=%d",
                handle.session_id, handle.generation_id, chunk_count, len(handle.text),
            )
            await channel.on_complete()

    async def _answer(
        self,
        handle: GenerationHandle,
        question: str,
        options: ChatOptions,
        canned: CannedResponse | None,
    ) -> None:
        messages = self._prepare(handle.session_id, question)
        if canned is not None:
            text = canned.text
        else:
            params = build_params(self.settings, enable_search=options.enable_search)
            text = (await self.client.call(messages, params)).text
        if handle.cancel_event.is_set():
            return
        handle.buffer.append(text)
        if await self._commit(handle):
            logger.info(
                "CHAT_ASK_DONE | session=%s | generation=%s | chars=%d",
                handle.session_id, handle.generation_id, len(text),
            )

    def _prepare(self, session_id: str, question: str) -> list[dict]:
        """Append the User message, compact, return backend messages."""
        self.store.append(session_id, Role.USER, question)
        history = self._compact(session_id)
        return [m.to_llm() for m in history]

    async def _commit(self, handle: GenerationHandle) -> bool:
        """Commit the buffer as the Assistant message if still running."""
        if handle.state != GenerationState.RUNNING:
            return False
        self.store.append(handle.session_id, Role.ASSISTANT, handle.text)
        self._compact(handle.session_id)
        handle.mark_completed()
        await self.registry.remove(handle.session_id, handle)
        return True

    def _compact(self, session_id: str) -> History:
        before = self.store.get(session_id)
        history = compact(before, self.settings.max_history_tokens)
        if len(history) != len(before):
            self.store.replace(session_id, history)
            logger.info(
                "HISTORY_COMPACTED | session=%s | messages=%d -> %d",
                session_id, len(before), len(history),
            )
        return history

    async def _canned_stream(
        self, handle: GenerationHandle, canned: CannedResponse,
    ) -> AsyncIterator[InferenceResult]:
        for i, chunk in enumerate(split_chunks(canned.text)):
            if i:
                await self._sleep(self.settings.fallback_chunk_delay_s)
            if handle.cancel_event.is_set():
                return
            yield InferenceResult(text=chunk, model=f"canned:{canned.name}")

    async def _watch_disconnect(self, handle: GenerationHandle, channel: DeliveryChannel) -> None:
        await channel.disconnected.wait()
        if handle.is_terminal:
            return
        logger.info(
            "CHAT_CLIENT_GONE | session=%s | generation=%s",
            handle.session_id, handle.generation_id,
        )
        await self.registry.cancel(handle.session_id, handle.generation_id)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _delete_files(self, session_id: str) -> None:
        try:
            await self.storage.delete(session_id)
        except Exception as e:
            logger.error("Failed to delete files for session %s: %s", session_id, e)
