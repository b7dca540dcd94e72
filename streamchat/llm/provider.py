"""Inference backend abstraction and litellm implementation.

The orchestrator only sees InferenceBackend:
- submit(messages, params)        → one InferenceResult
- submit_stream(messages, params) → async iterator of incremental InferenceResult

LiteLLMBackend maps litellm exceptions onto RetryableBackendError /
FatalBackendError and reads response text through _result_from_* helpers,
so provider response shapes never reach the state machine.

Streaming uses heartbeat liveness detection: no hard timeout on the whole
generation, but if no chunk arrives for stream_idle_timeout seconds the
stream is considered dead (RetryableBackendError).
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Protocol

import litellm

from streamchat.config import Settings, settings as default_settings
from streamchat.errors import FatalBackendError, RetryableBackendError
from streamchat.models import InferenceResult, ModelParams

logger = logging.getLogger(__name__)

# Input / credential problems: retrying will not help.
# ContextWindowExceededError and ContentPolicyViolationError are BadRequestErrors.
_FATAL_ERRORS: tuple[type[Exception], ...] = (
    litellm.AuthenticationError,
    litellm.NotFoundError,
    litellm.BadRequestError,
    litellm.UnprocessableEntityError,
)

_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    litellm.APIConnectionError,
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.Timeout,
    litellm.APIError,
)


class InferenceBackend(Protocol):
    """Remote inference backend contract."""

    async def submit(self, messages: list[dict], params: ModelParams) -> InferenceResult:
        ...

    def submit_stream(
        self, messages: list[dict], params: ModelParams,
    ) -> AsyncIterator[InferenceResult]:
        ...


def classify_error(exc: Exception) -> Exception:
    """Map a provider exception onto the retryable/fatal taxonomy."""
    if isinstance(exc, (RetryableBackendError, FatalBackendError)):
        return exc
    if isinstance(exc, _FATAL_ERRORS):
        return FatalBackendError(str(exc))
    if isinstance(exc, _RETRYABLE_ERRORS):
        return RetryableBackendError(str(exc))
    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return RetryableBackendError(str(exc) or exc.__class__.__name__)
    return exc


def build_params(cfg: Settings, enable_search: bool = False) -> ModelParams:
    """Default model parameters for a chat generation."""
    return ModelParams(
        model=cfg.model,
        temperature=cfg.temperature,
        top_p=cfg.top_p,
        max_tokens=cfg.max_output_tokens,
        enable_search=enable_search,
        api_base=cfg.api_base,
        api_key=cfg.api_key,
        timeout=cfg.request_timeout_s,
    )


class LiteLLMBackend:
    """InferenceBackend over litellm.acompletion."""

    def __init__(self, cfg: Settings | None = None):
        self.settings = cfg or default_settings

    def _kwargs(self, messages: list[dict], params: ModelParams, stream: bool) -> dict:
        kwargs: dict = {
            "model": params.model,
            "messages": messages,
            "temperature": params.temperature,
            "top_p": params.top_p,
            "max_tokens": params.max_tokens,
            "stream": stream,
        }
        if params.api_base:
            kwargs["api_base"] = params.api_base
        if params.api_key:
            kwargs["api_key"] = params.api_key
        if params.timeout:
            kwargs["timeout"] = params.timeout
        if params.enable_search:
            # Provider-side web search (DashScope compatible-mode flag)
            kwargs["extra_body"] = {"enable_search": True}
        return kwargs

    async def submit(self, messages: list[dict], params: ModelParams) -> InferenceResult:
        logger.info("LLM blocking call: model=%s, messages=%d", params.model, len(messages))
        try:
            response = await litellm.acompletion(**self._kwargs(messages, params, stream=False))
        except Exception as e:
            _reraise(e)
        return _result_from_response(response, params.model)

    async def submit_stream(
        self, messages: list[dict], params: ModelParams,
    ) -> AsyncIterator[InferenceResult]:
        logger.info("LLM streaming call: model=%s, messages=%d", params.model, len(messages))
        try:
            response = await litellm.acompletion(**self._kwargs(messages, params, stream=True))
        except Exception as e:
            _reraise(e)

        chunk_count = 0
        try:
            async for chunk in self._iter_with_heartbeat(response):
                result = _result_from_chunk(chunk, params.model)
                if result is None:
                    continue
                chunk_count += 1
                yield result
        except Exception as e:
            _reraise(e)
        finally:
            close = getattr(response, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception as close_err:
                    logger.debug("Stream close failed: %s", close_err)

        logger.info("LLM streaming complete: model=%s, %d chunks", params.model, chunk_count)

    async def _iter_with_heartbeat(self, stream):
        """Iterate over streaming chunks with an idle timeout between chunks."""
        idle = self.settings.stream_idle_timeout_s
        aiter = stream.__aiter__()
        while True:
            try:
                chunk = await asyncio.wait_for(aiter.__anext__(), timeout=idle)
            except asyncio.TimeoutError:
                raise RetryableBackendError(f"LLM stopped sending tokens for {idle}s")
            except StopAsyncIteration:
                return
            yield chunk


def _result_from_response(response, model: str) -> InferenceResult:
    """Read text from a non-streaming OpenAI-shaped response."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise FatalBackendError("Backend returned no choices")
    choice = choices[0]
    message = getattr(choice, "message", None)
    text = getattr(message, "content", None) or ""
    return InferenceResult(
        text=text,
        finish_reason=getattr(choice, "finish_reason", None),
        model=getattr(response, "model", None) or model,
    )


def _result_from_chunk(chunk, model: str) -> InferenceResult | None:
    """Read incremental text from an OpenAI-shaped stream chunk.

    Returns None for keep-alive / role-only / usage chunks.
    """
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return None
    choice = choices[0]
    delta = getattr(choice, "delta", None)
    text = getattr(delta, "content", None) or ""
    finish_reason = getattr(choice, "finish_reason", None)
    if not text and not finish_reason:
        return None
    return InferenceResult(
        text=text,
        finish_reason=finish_reason,
        model=getattr(chunk, "model", None) or model,
    )


def _reraise(exc: Exception) -> None:
    mapped = classify_error(exc)
    if mapped is exc:
        raise exc
    raise mapped from exc
