"""
Realtime orchestration schemas - Pydantic models for backend events, tool results and session state.
"""

from .events import (
    ServerEvent,
    ServerEventType,
    ClientCommand,
    ClientCommandType,
    StreamEvent,
    StreamEventKind,
)

from .results import (
    DisplayMode,
    FlowContext,
    Continuation,
    FunctionCallRequest,
    FunctionCallResult,
)

from .session import (
    AgentMetadata,
    SessionStatus,
    TranscriptItem,
    TranscriptRole,
    TranscriptStatus,
)

__all__ = [
    # Events
    "ServerEvent",
    "ServerEventType",
    "ClientCommand",
    "ClientCommandType",
    "StreamEvent",
    "StreamEventKind",
    # Results
    "DisplayMode",
    "FlowContext",
    "Continuation",
    "FunctionCallRequest",
    "FunctionCallResult",
    # Session
    "AgentMetadata",
    "SessionStatus",
    "TranscriptItem",
    "TranscriptRole",
    "TranscriptStatus",
]
