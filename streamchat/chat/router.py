"""Chat API endpoints — FastAPI router.

Endpoints:
- POST /chat/stream               → SSE stream of message / done / error events
- WS   /chat/ws                   → same events over a WebSocket, plus stop frames
- POST /chat/ask                  → non-streaming answer
- POST /chat/stop                 → cancel in-flight generation ("stopped")
- POST /chat/clear                → drop history + session files
- POST /chat/sessions             → create a new session id
- GET  /chat/sessions             → list sessions with history
- GET  /chat/history/{session_id} → history snapshot
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.requests import HTTPConnection
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from streamchat.chat.channel import QueueDeliveryChannel, WebSocketDeliveryChannel
from streamchat.chat.orchestrator import StreamOrchestrator
from streamchat.errors import ChatValidationError, FatalBackendError, GenerationCancelled
from streamchat.models import ChatRequest, MessageOut, SessionRequest, StopRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat")


def get_orchestrator(conn: HTTPConnection) -> StreamOrchestrator:
    """Orchestrator owned by the application (created in lifespan)."""
    return conn.app.state.orchestrator


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@router.post("/stream")
async def chat_stream(
    request: ChatRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Stream the answer as Server-Sent Events.

    Events:
        message: {"content": "..."}   (repeated)
        done:    [DONE]
        error:   {"error": "..."}
    """
    channel = QueueDeliveryChannel()
    try:
        handle = await orchestrator.start(
            request.session_id, request.question, channel, request.options,
        )
    except ChatValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return EventSourceResponse(
        channel.sse_events(),
        headers={"X-Generation-Id": handle.generation_id},
    )


@router.websocket("/ws")
async def chat_ws(
    websocket: WebSocket,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Bidirectional chat.

    Client frames:
        {"type": "chat", "sessionId": ..., "question": ..., "options": {...}}
        {"type": "stop", "sessionId": ..., "generationId": ...?}
    Server frames:
        {"event": "started" | "message" | "done" | "error" | "stopped",
         "sessionId": ..., "data": ...}
    """
    await websocket.accept()
    channels: list[WebSocketDeliveryChannel] = []
    try:
        while True:
            frame = await websocket.receive_json()
            kind = frame.get("type", "chat") if isinstance(frame, dict) else None
            channels = [c for c in channels if not c.finished]

            if kind == "stop":
                stop = StopRequest.model_validate(frame)
                await orchestrator.cancel(stop.session_id, stop.generation_id)
                await websocket.send_json(
                    {"event": "stopped", "sessionId": stop.session_id, "data": "stopped"},
                )
                continue

            if kind != "chat":
                await websocket.send_json(
                    {"event": "error", "sessionId": None, "data": {"error": f"unknown frame type: {kind}"}},
                )
                continue

            try:
                request = ChatRequest.model_validate(frame)
                channel = WebSocketDeliveryChannel(websocket, request.session_id)
                handle = await orchestrator.start(
                    request.session_id, request.question, channel, request.options,
                )
            except (ChatValidationError, ValidationError) as e:
                await websocket.send_json(
                    {"event": "error", "sessionId": frame.get("sessionId"), "data": {"error": str(e)}},
                )
                continue

            channels.append(channel)
            await channel.open(handle.generation_id)
    except WebSocketDisconnect:
        logger.info("WebSocket closed (%d open generations)", len(channels))
    finally:
        for channel in channels:
            channel.mark_disconnected()


# ---------------------------------------------------------------------------
# Request/response endpoints
# ---------------------------------------------------------------------------

@router.post("/ask")
async def chat_ask(
    request: ChatRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Non-streaming chat. Backend retries happen before this returns."""
    try:
        answer = await orchestrator.ask(request.session_id, request.question, request.options)
    except ChatValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GenerationCancelled as e:
        raise HTTPException(status_code=409, detail=str(e))
    except FatalBackendError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"content": answer}


@router.post("/stop", response_class=PlainTextResponse)
async def chat_stop(
    request: StopRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Cancel the session's in-flight generation. Unknown sessions are a no-op."""
    cancelled = await orchestrator.cancel(request.session_id, request.generation_id)
    logger.info("STOP | session=%s | cancelled=%s", request.session_id, cancelled)
    return "stopped"


@router.post("/clear")
async def chat_clear(
    request: SessionRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.clear(request.session_id)
    except ChatValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "cleared"}


@router.post("/sessions")
async def create_session(orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    return {"sessionId": orchestrator.create_session()}


@router.get("/sessions")
async def list_sessions(orchestrator: StreamOrchestrator = Depends(get_orchestrator)):
    return {"sessions": orchestrator.store.sessions()}


@router.get("/history/{session_id}", response_model=list[MessageOut])
async def chat_history(
    session_id: str,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    return [MessageOut.from_message(m) for m in orchestrator.history(session_id)]
