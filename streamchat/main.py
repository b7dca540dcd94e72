"""FastAPI application – streaming chat service.

Browser → service:
- POST /chat/stream (SSE) or WS /chat/ws for streamed answers
- POST /chat/stop to cancel the in-flight generation of a session
- POST /chat/clear to drop a session's history and uploaded files

The orchestrator (conversation store + cancellation registry) is created in
lifespan and stored on app.state; request handlers reach it via
streamchat.chat.router.get_orchestrator.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from streamchat.chat.orchestrator import StreamOrchestrator
from streamchat.chat.router import router as chat_router
from streamchat.config import Settings, settings
from streamchat.llm.provider import InferenceBackend, LiteLLMBackend
from streamchat.llm.retry import RetryingInferenceClient
from streamchat.logging_utils import HealthCheckAccessFilter, configure_logging
from streamchat.storage import FileStorage, build_storage

configure_logging()
logger = logging.getLogger(__name__)


def build_orchestrator(
    cfg: Settings,
    backend: InferenceBackend | None = None,
    storage: FileStorage | None = None,
) -> StreamOrchestrator:
    client = RetryingInferenceClient(
        backend or LiteLLMBackend(cfg),
        max_attempts=cfg.max_attempts,
        backoff_base=cfg.backoff_base,
    )
    return StreamOrchestrator(
        client,
        cfg=cfg,
        storage=storage if storage is not None else build_storage(cfg),
    )


def create_app(
    cfg: Settings | None = None,
    orchestrator: StreamOrchestrator | None = None,
) -> FastAPI:
    cfg = cfg or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.getLogger("uvicorn.access").addFilter(HealthCheckAccessFilter())
        app.state.orchestrator = orchestrator or build_orchestrator(cfg)
        logger.info("Chat service starting on port %d (model=%s)", cfg.port, cfg.model)
        yield
        await app.state.orchestrator.shutdown()
        logger.info("Chat service stopped")

    app = FastAPI(
        title="streamchat",
        description="Session-scoped streaming chat orchestrator",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(chat_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "streamchat",
            "active_generations": app.state.orchestrator.active_generations(),
            "sessions": len(app.state.orchestrator.store),
        }

    @app.get("/metrics")
    async def prometheus_metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


# --- Entry point ---

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "streamchat.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )
