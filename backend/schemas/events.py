"""
Backend event and command schemas.
Inbound ServerEvents arrive from the realtime conversational backend; outbound
ClientCommands are sent back to it. StreamEvents fan commands and UI updates out
over Redis Streams to the SSE endpoint.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
import uuid


class ServerEventType(str, Enum):
    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    SESSION_ERROR = "session.error"
    ERROR = "error"

    # Conversation items
    ITEM_CREATED = "conversation.item.created"
    TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"

    # Streaming deltas
    AUDIO_TRANSCRIPT_DELTA = "response.audio_transcript.delta"
    OUTPUT_AUDIO_TRANSCRIPT_DELTA = "response.output_audio_transcript.delta"
    FUNCTION_CALL_ARGUMENTS_DELTA = "response.function_call_arguments.delta"
    FUNCTION_CALL_ARGUMENTS_DONE = "response.function_call_arguments.done"

    # Response lifecycle
    RESPONSE_CREATED = "response.created"
    RESPONSE_DONE = "response.done"
    RESPONSE_CANCELLED = "response.cancelled"
    OUTPUT_ITEM_DONE = "response.output_item.done"

    # Audio buffer lifecycle
    INPUT_AUDIO_CLEARED = "input_audio_buffer.cleared"
    OUTPUT_AUDIO_STARTED = "output_audio_buffer.started"
    OUTPUT_AUDIO_STOPPED = "output_audio_buffer.stopped"

    RATE_LIMITS_UPDATED = "rate_limits.updated"


class ClientCommandType(str, Enum):
    ITEM_CREATE = "conversation.item.create"
    RESPONSE_CREATE = "response.create"
    RESPONSE_CANCEL = "response.cancel"
    SESSION_UPDATE = "session.update"


# Backend error codes with special handling
DUPLICATE_ACTIVE_RESPONSE_CODE = "conversation_already_has_active_response"
CANCEL_NOT_ACTIVE_CODE = "response_cancel_not_active"


class ServerEvent(BaseModel):
    """An inbound backend event. Only the fields the orchestrator reads are typed."""
    model_config = ConfigDict(extra="allow")

    type: str
    event_id: Optional[str] = None
    item_id: Optional[str] = None
    item: Optional[Dict[str, Any]] = None
    response: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    transcript: Optional[str] = None
    delta: Optional[str] = None

    @property
    def response_id(self) -> Optional[str]:
        if self.response:
            return self.response.get("id")
        return None

    @property
    def response_status(self) -> Optional[str]:
        if self.response:
            return self.response.get("status")
        return None

    def output_items(self) -> List[Dict[str, Any]]:
        if not self.response:
            return []
        return list(self.response.get("output") or [])

    def function_call_items(self) -> List[Dict[str, Any]]:
        """Function calls of a completed response, in emitted order."""
        return [
            item for item in self.output_items()
            if item.get("type") == "function_call" and item.get("name")
            and item.get("arguments") is not None and item.get("status") != "incomplete"
        ]

    def item_text(self) -> str:
        """Concatenated text/transcript content of the carried item."""
        if not self.item:
            return ""
        parts = []
        for content in self.item.get("content") or []:
            text = content.get("text") or content.get("transcript")
            if text:
                parts.append(text)
        return "".join(parts)

    @property
    def error_code(self) -> Optional[str]:
        if self.error:
            return self.error.get("code")
        return None

    @property
    def error_message(self) -> str:
        if self.error:
            return self.error.get("message") or "Unknown error"
        return "Unknown error"


class ClientCommand(BaseModel):
    """An outbound command for the conversational backend."""
    model_config = ConfigDict(extra="allow")

    type: ClientCommandType
    event_id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:20]}")
    item: Optional[Dict[str, Any]] = None
    session: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def new_item_id() -> str:
    """Backend item ids are limited to 32 characters."""
    return f"item_{uuid.uuid4().hex[:24]}"


def user_message_command(text: str, item_id: Optional[str] = None) -> ClientCommand:
    return ClientCommand(
        type=ClientCommandType.ITEM_CREATE,
        item={
            "id": item_id or new_item_id(),
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        },
    )


def assistant_message_command(text: str, item_id: Optional[str] = None) -> ClientCommand:
    return ClientCommand(
        type=ClientCommandType.ITEM_CREATE,
        item={
            "id": item_id or new_item_id(),
            "type": "message",
            "role": "assistant",
            "content": [{"type": "text", "text": text}],
        },
    )


def function_output_command(call_id: str, output: str) -> ClientCommand:
    return ClientCommand(
        type=ClientCommandType.ITEM_CREATE,
        item={"type": "function_call_output", "call_id": call_id, "output": output},
    )


def response_create_command() -> ClientCommand:
    return ClientCommand(type=ClientCommandType.RESPONSE_CREATE)


def response_cancel_command() -> ClientCommand:
    return ClientCommand(type=ClientCommandType.RESPONSE_CANCEL)


def session_update_command(instructions: str, tools: List[Dict[str, Any]]) -> ClientCommand:
    return ClientCommand(
        type=ClientCommandType.SESSION_UPDATE,
        session={"instructions": instructions, "tools": tools, "tool_choice": "auto"},
    )


# ═══════════════════════════════════════════════════════════════════
# Session stream (Redis -> SSE)
# ═══════════════════════════════════════════════════════════════════

class StreamEventKind(str, Enum):
    COMMAND = "command"
    UI_MODE = "ui.mode"
    UI_PAYLOAD = "ui.payload"
    UI_AGENT = "ui.agent"
    SESSION_STATUS = "session.status"
    SESSION_CLOSED = "session.closed"
    HEARTBEAT = "heartbeat"


class StreamEvent(BaseModel):
    """Event fanned out to browser clients of a session."""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    stream_id: Optional[str] = Field(default=None, description="Redis stream message id for resume")
    ts: datetime = Field(default_factory=datetime.utcnow)
    sequence: int = 0
    kind: StreamEventKind
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_sse_data(self) -> str:
        return self.model_dump_json()


def heartbeat_event(session_id: str, sequence: int = 0) -> StreamEvent:
    return StreamEvent(session_id=session_id, kind=StreamEventKind.HEARTBEAT, sequence=sequence)
