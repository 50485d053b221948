"""
Conversation session - wires the orchestration components for one connection.
"""

import asyncio
from typing import Any, Dict, Optional
import structlog

from schemas.events import ServerEvent
from schemas.session import SessionStatus
from orchestrator.agent_registry import AgentRegistry
from orchestrator.commands import CommandChannel, CommandSink
from orchestrator.dispatcher import EventDispatcher
from orchestrator.display import DisplayModeSynchronizer, UiSink
from orchestrator.escalation import EscalationConfig, QuestionCountPolicy
from orchestrator.executor import FunctionCallExecutor
from orchestrator.lifecycle import ResponseLifecycleTracker
from orchestrator.state import SessionState
from orchestrator.timers import ContinuationScheduler, CoordinatorTimings
from orchestrator.transfer import AgentTransferCoordinator
from services.transcript_store import TranscriptStore

logger = structlog.get_logger()


class ConversationSession:
    """
    One conversation from connect to disconnect.

    All transient flags live on `state`; a reconnect builds a new session,
    which is what resets the one-shot escalation.
    """

    def __init__(
        self,
        session_id: str,
        registry: AgentRegistry,
        command_sink: CommandSink,
        ui_sink: UiSink,
        transcript: Optional[TranscriptStore] = None,
        timings: Optional[CoordinatorTimings] = None,
        escalation: Optional[EscalationConfig] = None,
        audio_output: bool = True,
    ):
        self.session_id = session_id
        self.registry = registry
        self.ui_sink = ui_sink
        self.transcript = transcript or TranscriptStore()
        self.timings = timings or CoordinatorTimings.from_env()
        self.state = SessionState(session_id=session_id, audio_output=audio_output)

        # Held by whoever drives events in and by every scheduled continuation
        self.lock = asyncio.Lock()
        self.scheduler = ContinuationScheduler(session_id, lock=self.lock)
        self.tracker = ResponseLifecycleTracker(session_id)
        self.channel = CommandChannel(session_id, command_sink, self.tracker)
        self.executor = FunctionCallExecutor(session_id, registry, self.transcript)
        self.display = DisplayModeSynchronizer(session_id, ui_sink, self.scheduler, self.timings)
        self.policy = QuestionCountPolicy(self.state, registry, escalation or EscalationConfig.from_env())
        self.coordinator = AgentTransferCoordinator(
            self.state, registry, self.channel, self.tracker, self.display,
            self.executor, ui_sink, self.scheduler, self.timings,
        )
        self.dispatcher = EventDispatcher(
            self.state, registry, self.transcript, self.channel, self.tracker,
            self.executor, self.coordinator, self.policy, self.display, self.timings,
        )

    async def handle_event(self, event: Dict[str, Any] | ServerEvent) -> None:
        """Dispatch one backend event. Transports call this while holding `lock`."""
        await self.dispatcher.dispatch(event)

    async def configure_backend(self) -> None:
        """Send the active agent's instructions and tools to the backend."""
        agent = self.registry.active
        await self.channel.update_session(agent.instructions, agent.tool_definitions())
        await self.ui_sink.set_active_agent(agent.name, agent.metadata.to_dict())

    def close(self) -> None:
        self.scheduler.close()
        self.state.status = SessionStatus.DISCONNECTED
        logger.info("session_closed", session_id=self.session_id, agent=self.registry.active_name)

    def snapshot(self) -> Dict[str, Any]:
        agent = self.registry.active
        return {
            "session_id": self.session_id,
            "status": self.state.status.value,
            "active_agent": agent.name,
            "metadata": agent.metadata.to_dict(),
            "display_mode": self.display.mode.value,
            "response_state": self.tracker.state.value,
            "is_transferring": self.state.is_transferring,
            "escalation_triggered": self.state.escalation_triggered,
            "transcript": [i.model_dump(mode="json") for i in self.transcript.items()],
        }
