"""
Event Dispatcher - routes backend events through the orchestration components.

Handlers run one at a time per session. Function calls are taken from completed
responses (never from argument deltas), executed in emitted order, and answered
with a single response-create per batch.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Union
import structlog

from schemas.events import (
    CANCEL_NOT_ACTIVE_CODE,
    DUPLICATE_ACTIVE_RESPONSE_CODE,
    ServerEvent,
    ServerEventType,
)
from schemas.results import FunctionCallRequest
from schemas.session import SessionStatus, TranscriptRole, TranscriptStatus
from orchestrator.agent_registry import AgentRegistry
from orchestrator.commands import CommandChannel
from orchestrator.display import DisplayModeSynchronizer
from orchestrator.errors import BackendProtocolError, CancelWithNoActiveResponse, DuplicateActiveResponse
from orchestrator.escalation import QuestionCountPolicy
from orchestrator.executor import FunctionCallExecutor
from orchestrator.lifecycle import ResponseLifecycleTracker, ResponseState
from orchestrator.state import SessionState
from orchestrator.timers import CoordinatorTimings
from orchestrator.transfer import AgentTransferCoordinator
from services.transcript_store import TranscriptStore

logger = structlog.get_logger()

INAUDIBLE_TEXT = "[inaudible]"

# Error codes that end the session
FATAL_ERROR_CODES = {"session_expired", "invalid_api_key", "session_closed"}

EventHandler = Callable[[ServerEvent], Awaitable[None]]


class EventDispatcher:
    def __init__(
        self,
        state: SessionState,
        registry: AgentRegistry,
        transcript: TranscriptStore,
        channel: CommandChannel,
        tracker: ResponseLifecycleTracker,
        executor: FunctionCallExecutor,
        coordinator: AgentTransferCoordinator,
        policy: QuestionCountPolicy,
        display: DisplayModeSynchronizer,
        timings: CoordinatorTimings,
    ):
        self.state = state
        self.registry = registry
        self.transcript = transcript
        self.channel = channel
        self.tracker = tracker
        self.executor = executor
        self.coordinator = coordinator
        self.policy = policy
        self.display = display
        self.timings = timings

        self._handlers: Dict[str, EventHandler] = {
            ServerEventType.SESSION_CREATED.value: self._on_session_created,
            ServerEventType.SESSION_ERROR.value: self._on_session_error,
            ServerEventType.ERROR.value: self._on_error,
            ServerEventType.ITEM_CREATED.value: self._on_item_created,
            ServerEventType.TRANSCRIPTION_COMPLETED.value: self._on_transcription_completed,
            ServerEventType.AUDIO_TRANSCRIPT_DELTA.value: self._on_transcript_delta,
            ServerEventType.OUTPUT_AUDIO_TRANSCRIPT_DELTA.value: self._on_transcript_delta,
            ServerEventType.RESPONSE_CREATED.value: self._on_response_created,
            ServerEventType.RESPONSE_DONE.value: self._on_response_done,
            ServerEventType.RESPONSE_CANCELLED.value: self._on_response_cancelled,
            ServerEventType.OUTPUT_ITEM_DONE.value: self._on_output_item_done,
            ServerEventType.OUTPUT_AUDIO_STARTED.value: self._on_audio_started,
            ServerEventType.OUTPUT_AUDIO_STOPPED.value: self._on_audio_stopped,
        }

    async def dispatch(self, raw: Union[ServerEvent, Dict[str, Any]]) -> None:
        """Route one backend event."""
        if isinstance(raw, ServerEvent):
            event = raw
        else:
            if not isinstance(raw, dict) or not raw.get("type"):
                logger.warning("backend_event_malformed", session_id=self.state.session_id)
                return
            event = ServerEvent.model_validate(raw)

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("backend_event_ignored", session_id=self.state.session_id, type=event.type)
            return
        await handler(event)

    # ═══════════════════════════════════════════════════════════════════
    # Session lifecycle and errors
    # ═══════════════════════════════════════════════════════════════════

    async def _on_session_created(self, event: ServerEvent) -> None:
        self.state.status = SessionStatus.CONNECTED
        self.transcript.add_system_message("Connection established.")
        logger.info("session_connected", session_id=self.state.session_id, agent=self.registry.active_name)

    async def _on_session_error(self, event: ServerEvent) -> None:
        error = BackendProtocolError(event.error_code, event.error_message, fatal=True, session_level=True)
        self._surface_protocol_error(error)

    async def _on_error(self, event: ServerEvent) -> None:
        code = event.error_code
        if code == DUPLICATE_ACTIVE_RESPONSE_CODE:
            race = DuplicateActiveResponse(event.error_message)
            if self.tracker.state == ResponseState.REQUESTED:
                self.channel.gate.rearm()
            if self.tracker.state in (ResponseState.IDLE, ResponseState.REQUESTED):
                self.tracker.mark_active()
            logger.warning("duplicate_active_response", session_id=self.state.session_id, detail=str(race))
            return

        if code == CANCEL_NOT_ACTIVE_CODE:
            race = CancelWithNoActiveResponse(event.error_message)
            self.tracker.mark_idle("cancel_not_active")
            logger.warning("cancel_with_no_active_response", session_id=self.state.session_id, detail=str(race))
            await self._on_idle()
            return

        error = BackendProtocolError(code, event.error_message, fatal=code in FATAL_ERROR_CODES)
        if self.tracker.state == ResponseState.REQUESTED:
            self.tracker.mark_idle("request_rejected")
        self._surface_protocol_error(error)

    def _surface_protocol_error(self, error: BackendProtocolError) -> None:
        self.transcript.add_system_message(error.transcript_line())
        if error.fatal:
            self.state.status = SessionStatus.DISCONNECTED
        logger.error(
            "backend_protocol_error",
            session_id=self.state.session_id,
            code=error.code,
            error=error.message,
            fatal=error.fatal,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Conversation items and transcript
    # ═══════════════════════════════════════════════════════════════════

    def _responding_agent(self) -> str:
        return self.tracker.owner_of(self.tracker.response_id) or self.registry.active_name

    def _is_hidden_user_text(self, text: str) -> bool:
        """UI triggers and OTP relays share the prefixes the question counter ignores."""
        return text.strip().lower().startswith(tuple(self.policy.config.ignored_prefixes))

    async def _on_item_created(self, event: ServerEvent) -> None:
        item = event.item or {}
        item_id = item.get("id")
        if item_id and self.transcript.has_terminal(item_id):
            logger.debug("item_duplicate_skipped", session_id=self.state.session_id, item_id=item_id)
            return

        item_type = item.get("type")
        if item_type == "function_call_output":
            self._record_function_output(item)
            return
        if item_type != "message" or not item_id:
            return

        role = item.get("role")
        text = event.item_text()
        if role == "user":
            synthetic = self.channel.is_synthetic(item_id)
            if not synthetic:
                self.policy.observe_utterance(item_id, text)
            hidden = synthetic or self._is_hidden_user_text(text)
            self.transcript.add_message(item_id, TranscriptRole.USER, text, hidden=hidden)
        elif role == "assistant":
            agent_name = self._responding_agent()
            if self.state.is_transferring and agent_name != self.state.transfer_target:
                logger.debug("stale_assistant_item_skipped", session_id=self.state.session_id, agent=agent_name)
                return
            last_agent = self.transcript.last_agent_name()
            if last_agent is not None and last_agent != agent_name:
                agent = self.registry.get(agent_name)
                self.transcript.add_system_message(f"--- {agent.display_name if agent else agent_name} ---")
            self.transcript.add_message(item_id, TranscriptRole.ASSISTANT, text, agent_name=agent_name)
            if agent_name == self.policy.config.escalation_agent:
                await self.display.reassert_verification_form()

    def _record_function_output(self, item: Dict[str, Any]) -> None:
        try:
            output = json.loads(item.get("output") or "{}")
        except json.JSONDecodeError:
            return
        if not isinstance(output, dict):
            return
        if output.get("error"):
            text = f"Error: {output['error']}"
        elif output.get("message"):
            text = output["message"]
        else:
            return
        item_id = item.get("id") or f"out_{item.get('call_id')}"
        self.transcript.add_message(item_id, TranscriptRole.ASSISTANT, text, agent_name=self.registry.active_name)
        self.transcript.set_status(item_id, TranscriptStatus.DONE)

    async def _on_transcription_completed(self, event: ServerEvent) -> None:
        item_id = event.item_id
        if not item_id:
            return
        text = (event.transcript or "").strip()
        synthetic = self.channel.is_synthetic(item_id)
        if not synthetic:
            self.policy.observe_utterance(item_id, text)

        shown = text or INAUDIBLE_TEXT
        if self.transcript.get(item_id) is None:
            hidden = synthetic or self._is_hidden_user_text(shown)
            self.transcript.add_message(item_id, TranscriptRole.USER, shown, hidden=hidden)
        else:
            self.transcript.update_message(item_id, shown)

    async def _on_transcript_delta(self, event: ServerEvent) -> None:
        if event.item_id and event.delta:
            self.transcript.update_message(event.item_id, event.delta, append=True)

    async def _on_output_item_done(self, event: ServerEvent) -> None:
        item = event.item or {}
        if item.get("id"):
            self.transcript.set_status(item["id"], TranscriptStatus.DONE)

    # ═══════════════════════════════════════════════════════════════════
    # Response lifecycle
    # ═══════════════════════════════════════════════════════════════════

    async def _on_response_created(self, event: ServerEvent) -> None:
        self.tracker.mark_active(event.response_id, owner=self.registry.active_name)

    async def _on_response_done(self, event: ServerEvent) -> None:
        response_id = event.response_id
        owner = self.tracker.owner_of(response_id) or self.registry.active_name
        self.tracker.mark_idle("response_done", response_id)

        await self._process_response_outputs(event, owner)

        if not self.state.audio_output:
            await self._run_armed_escalation("response_done")
        await self._on_idle()

    async def _on_response_cancelled(self, event: ServerEvent) -> None:
        self.tracker.mark_idle("response_cancelled", event.response_id)
        await self._on_idle()

    async def _on_idle(self) -> None:
        """Run parked function calls, then any deferred response request."""
        if self.tracker.is_active():
            return
        if self.state.deferred_calls:
            calls = list(self.state.deferred_calls)
            self.state.deferred_calls.clear()
            logger.info("deferred_function_calls_resumed", session_id=self.state.session_id, count=len(calls))
            await self._run_calls(calls)
        await self.channel.gate.flush()

    async def _process_response_outputs(self, event: ServerEvent, owner: str) -> None:
        calls = [FunctionCallRequest.from_output_item(item) for item in event.function_call_items()]

        if self.state.is_transferring:
            target = self.state.transfer_target
            self.state.end_transfer()
            if owner != target:
                if calls:
                    logger.warning(
                        "stale_function_calls_skipped",
                        session_id=self.state.session_id,
                        owner=owner,
                        transfer_target=target,
                        functions=[c.name for c in calls],
                    )
                return
            logger.info("transfer_settled", session_id=self.state.session_id, agent=target)

        if not calls:
            return

        if self.tracker.is_active():
            await asyncio.sleep(self.timings.function_call_recheck)
            if self.tracker.is_active():
                self.state.deferred_calls.extend(calls)
                logger.info(
                    "function_calls_deferred",
                    session_id=self.state.session_id,
                    functions=[c.name for c in calls],
                )
                return

        await self._run_calls(calls)

    async def _run_calls(self, calls: List[FunctionCallRequest]) -> None:
        owner = self.registry.active_name
        wants_response = False
        for index, call in enumerate(calls):
            if self.registry.active_name != owner:
                # A call earlier in the batch transferred; the rest belong to the old agent
                logger.warning(
                    "stale_function_calls_skipped",
                    session_id=self.state.session_id,
                    owner=owner,
                    active=self.registry.active_name,
                    functions=[c.name for c in calls[index:]],
                )
                return
            if await self._handle_function_call(call):
                wants_response = True
        # After a transfer the coordinator decides what the new agent responds to
        if wants_response and self.registry.active_name == owner:
            await self.channel.request_response("function_outputs")

    async def _handle_function_call(self, call: FunctionCallRequest) -> bool:
        """
        Execute one call and apply its side effects.

        Returns:
            True if a function output was sent and the backend should respond.
        """
        agent = self.registry.active
        result = await self.executor.execute(call)
        self.policy.observe_result(result)

        if result.requests_transfer:
            destination = self.registry.get(result.destination_agent)
            if destination is not None:
                await self.display.apply_result(result, transfer_default=destination.default_ui_hint)
            await self.coordinator.transfer(result, call_id=call.call_id)
            return False

        await self.display.apply_result(result, internal_tool=agent.is_internal_tool(call.name))

        if self.registry.active is agent and agent.refresh_instructions():
            await self.channel.update_session(agent.instructions, agent.tool_definitions())

        if result.silent or not call.call_id:
            return False
        await self.channel.send_function_output(call.call_id, result.to_output())
        return True

    # ═══════════════════════════════════════════════════════════════════
    # Audio playback and escalation
    # ═══════════════════════════════════════════════════════════════════

    async def _on_audio_started(self, event: ServerEvent) -> None:
        self.state.audio_playing = True

    async def _on_audio_stopped(self, event: ServerEvent) -> None:
        self.state.audio_playing = False
        await self._run_armed_escalation("audio_stopped")

    async def _run_armed_escalation(self, trigger: str) -> None:
        result = self.policy.take_escalation()
        if result is None:
            return
        logger.info("escalation_transfer_started", session_id=self.state.session_id, trigger=trigger)
        await self.display.apply_result(result)
        await self.coordinator.transfer(result)

