"""
Per-session transient state.
Passed by reference into every component so several sessions can share a process.
"""

from typing import List, Optional, Set
from pydantic import BaseModel, Field

from schemas.results import FunctionCallRequest
from schemas.session import SessionStatus


class SessionState(BaseModel):
    session_id: str
    status: SessionStatus = SessionStatus.CONNECTING

    # Transfer in progress: set by the coordinator, cleared by the next response.done
    is_transferring: bool = False
    transfer_target: Optional[str] = None

    # One-shot escalation: armed on threshold, executed at the next safe point
    escalation_triggered: bool = False
    escalation_pending: bool = False
    escalation_question: Optional[str] = None

    # Text-only sessions never report audio playback
    audio_output: bool = True
    audio_playing: bool = False

    # Bumped when a hand-off starts; scheduled continuations compare it before acting
    transfer_epoch: int = 0

    observed_utterance_ids: Set[str] = Field(default_factory=set)
    deferred_calls: List[FunctionCallRequest] = Field(default_factory=list)

    def begin_transfer(self, target: str) -> None:
        self.is_transferring = True
        self.transfer_target = target

    def end_transfer(self) -> None:
        self.is_transferring = False
        self.transfer_target = None
