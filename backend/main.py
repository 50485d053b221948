"""
Realtime Agent Orchestrator API Server - FastAPI with SSE streaming.
Main entry point for the backend API.
"""

import os
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid
from dotenv import load_dotenv
import structlog

# Load .env from project root (parent of backend/)
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse
from pydantic import BaseModel

from agents import build_agent_registry
from schemas.events import StreamEvent, StreamEventKind
from orchestrator.session import ConversationSession
from services.backend_client import close_backend_client
from services.realtime_bridge import RealtimeCommandSink, run_realtime_session
from services.session_store import get_session_store
from services.session_stream import (
    StreamCommandSink,
    StreamUiSink,
    close_session_stream,
    get_session_stream,
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - initialize and cleanup resources."""
    logger.info("starting_realtime_orchestrator_api")
    yield
    logger.info("shutting_down_realtime_orchestrator_api")
    get_session_store().close_all()
    await close_backend_client()
    await close_session_stream()


app = FastAPI(
    title="Realtime Agent Orchestrator API",
    description="Agent hand-off, function-call execution and UI state for realtime voice sessions",
    version="1.0.0",
    lifespan=lifespan,
)

from telemetry import configure_telemetry
configure_telemetry(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateSessionRequest(BaseModel):
    """Start a conversation session."""
    org_id: Optional[str] = None
    chatbot_id: Optional[str] = None
    org_name: Optional[str] = None
    language: Optional[str] = None
    project_id_map: Dict[str, str] = {}
    transport: str = "relay"  # "relay" (browser forwards commands) or "realtime" (server connects)
    audio_output: bool = True


class CreateSessionResponse(BaseModel):
    session_id: str
    transport: str
    agent: str
    instructions: str
    tools: List[Dict[str, Any]]
    message: str


def _require_session(session_id: str) -> ConversationSession:
    session = get_session_store().get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _start_bridge(session: ConversationSession, command_sink: RealtimeCommandSink) -> None:
    store = get_session_store()
    task = asyncio.create_task(
        run_realtime_session(session, command_sink, store.lock_for(session.session_id)),
        name=f"realtime.{session.session_id}",
    )
    store.attach_bridge(session.session_id, task)


# ============================================================================
# Health & Info Endpoints
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint for k8s probes."""
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


@app.get("/ready")
async def readiness_check():
    """Readiness check - verifies Redis."""
    checks = {"api": True}
    try:
        stream = await get_session_stream()
        await stream.redis.ping()
        checks["redis"] = True
    except Exception as e:
        checks["redis"] = False
        logger.error("redis_health_check_failed", error=str(e))

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"ready": all_healthy, "checks": checks},
    )


# ============================================================================
# Session Endpoints
# ============================================================================

@app.post("/api/sessions", response_model=CreateSessionResponse)
async def create_session(request: CreateSessionRequest):
    """
    Create a conversation session with its fixed agent set.

    In relay mode the browser subscribes to /stream and forwards `command`
    events to the realtime backend, posting backend events to /events.
    In realtime mode the server holds the backend connection itself.
    """
    if request.transport not in ("relay", "realtime"):
        raise HTTPException(status_code=400, detail="transport must be 'relay' or 'realtime'")

    session_id = f"session_{uuid.uuid4().hex[:16]}"
    registry = build_agent_registry({
        "session_id": session_id,
        "org_id": request.org_id,
        "chatbot_id": request.chatbot_id,
        "language": request.language,
        "org_name": request.org_name,
        "project_names": list(request.project_id_map),
        "project_ids": list(request.project_id_map.values()),
        "project_id_map": request.project_id_map,
    })

    try:
        stream = await get_session_stream()
    except Exception as e:
        logger.error("session_stream_unavailable", error=str(e))
        raise HTTPException(status_code=503, detail="Session stream unavailable")

    ui_sink = StreamUiSink(stream, session_id)
    store = get_session_store()
    if request.transport == "realtime":
        command_sink = RealtimeCommandSink()
        session = ConversationSession(session_id, registry, command_sink, ui_sink, audio_output=request.audio_output)
        store.add(session)
        _start_bridge(session, command_sink)
    else:
        session = ConversationSession(
            session_id, registry, StreamCommandSink(stream, session_id), ui_sink,
            audio_output=request.audio_output,
        )
        store.add(session)
        await session.configure_backend()

    agent = registry.active
    logger.info("session_created", session_id=session_id, transport=request.transport, agent=agent.name)
    return CreateSessionResponse(
        session_id=session_id,
        transport=request.transport,
        agent=agent.name,
        instructions=agent.instructions,
        tools=agent.tool_definitions(),
        message=f"Session created. Subscribe to /api/sessions/{session_id}/stream for commands and UI updates.",
    )


@app.get("/api/sessions")
async def list_sessions():
    ids = get_session_store().list_ids()
    return {"sessions": ids, "count": len(ids)}


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str):
    """Current agent, metadata, display mode and transcript."""
    return _require_session(session_id).snapshot()


@app.post("/api/sessions/{session_id}/events")
async def post_event(session_id: str, event: Dict[str, Any]):
    """Relay one realtime backend event into the session."""
    session = _require_session(session_id)
    if not event.get("type"):
        raise HTTPException(status_code=400, detail="Event type is required")

    async with get_session_store().lock_for(session_id):
        await session.handle_event(event)

    return {
        "accepted": True,
        "agent": session.registry.active_name,
        "response_state": session.tracker.state.value,
        "display_mode": session.display.mode.value,
    }


@app.post("/api/sessions/{session_id}/realtime")
async def start_realtime_bridge(session_id: str):
    """Move a relay session onto a server-held realtime connection."""
    session = _require_session(session_id)
    store = get_session_store()
    if store.has_bridge(session_id):
        raise HTTPException(status_code=409, detail="Realtime bridge already running")

    command_sink = RealtimeCommandSink()
    async with store.lock_for(session_id):
        session.channel.sink = command_sink
    _start_bridge(session, command_sink)

    logger.info("realtime_bridge_requested", session_id=session_id, agent=session.registry.active_name)
    return {"session_id": session_id, "transport": "realtime"}


@app.get("/api/sessions/{session_id}/stream")
async def stream_session(request: Request, session_id: str, since: Optional[str] = None):
    """
    SSE endpoint for outbound commands and UI updates.

    Supports reconnection via 'since' parameter or Last-Event-ID header.
    """
    _require_session(session_id)
    last_event_id = since or request.headers.get("Last-Event-ID")
    logger.info("sse_connection_started", session_id=session_id, last_event_id=last_event_id)

    async def event_generator():
        stream = await get_session_stream()
        try:
            async for event in stream.subscribe(session_id, last_event_id):
                if await request.is_disconnected():
                    logger.info("sse_client_disconnected", session_id=session_id)
                    break
                yield {
                    "id": event.stream_id or event.event_id,
                    "event": event.kind.value,
                    "data": event.to_sse_data(),
                    "retry": 5000,
                }
        except asyncio.CancelledError:
            logger.info("sse_stream_cancelled", session_id=session_id)
        except Exception as e:
            logger.error("sse_stream_error", session_id=session_id, error=str(e))

    return EventSourceResponse(event_generator())


@app.delete("/api/sessions/{session_id}")
async def close_session(session_id: str):
    """Disconnect a session; a new session starts with fresh escalation state."""
    session = get_session_store().remove(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    try:
        stream = await get_session_stream()
        await stream.publish(StreamEvent(session_id=session_id, kind=StreamEventKind.SESSION_CLOSED))
    except Exception as e:
        logger.warning("session_close_publish_failed", session_id=session_id, error=str(e))
    return {"session_id": session_id, "status": session.state.status.value}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
