"""
Session-scoped state models: agent metadata, transcript items and session status.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from .results import FlowContext


# Identity fields that must survive every handoff
IDENTITY_FIELDS = ("session_id", "org_id", "chatbot_id", "language")
DEFAULT_LANGUAGE = "English"


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TranscriptRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TranscriptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    DONE = "done"


class AgentMetadata(BaseModel):
    """
    Mutable per-agent state, merged across handoffs.

    Typed fields cover what the orchestration core reads; anything else a tool
    stores (customer_name, selected_date, ...) is kept as an extra.
    """
    model_config = ConfigDict(extra="allow")

    session_id: Optional[str] = None
    org_id: Optional[str] = None
    chatbot_id: Optional[str] = None
    language: Optional[str] = None

    is_verified: bool = False
    has_scheduled: bool = False
    user_question_count: int = 0

    active_project: Optional[str] = None
    active_project_id: Optional[str] = None
    project_names: List[str] = Field(default_factory=list)
    project_ids: List[str] = Field(default_factory=list)
    project_id_map: Dict[str, str] = Field(default_factory=dict)

    came_from: Optional[str] = None
    flow_context: Optional[FlowContext] = None
    pending_question: Optional[str] = None

    def has_flow_context(self, *contexts: FlowContext) -> bool:
        if self.flow_context in (None, FlowContext.NONE):
            return False
        return not contexts or self.flow_context in contexts

    def clear_flow_context(self) -> None:
        self.flow_context = None

    def get(self, key: str, default: Any = None) -> Any:
        value = getattr(self, key, None)
        if value is None:
            value = (self.model_extra or {}).get(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class TranscriptItem(BaseModel):
    item_id: str
    role: TranscriptRole
    text: str = ""
    status: TranscriptStatus = TranscriptStatus.IN_PROGRESS
    agent_name: Optional[str] = None
    hidden: bool = False
