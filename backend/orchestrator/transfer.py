"""
Agent Transfer Coordinator.

Hands the conversation from the active agent to a destination agent: settles
any in-flight response, merges metadata, switches the active pointer in one
step and gives the destination agent something to respond to.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
import uuid
import structlog

from schemas.results import FlowContext, FunctionCallResult, TRANSFER_CONTROL_FIELDS
from schemas.session import AgentMetadata, DEFAULT_LANGUAGE, IDENTITY_FIELDS
from orchestrator.agent_registry import Agent, AgentRegistry
from orchestrator.commands import CommandChannel
from orchestrator.display import DisplayModeSynchronizer, UiSink
from orchestrator.errors import AgentNotFound
from orchestrator.executor import FunctionCallExecutor
from orchestrator.lifecycle import ResponseLifecycleTracker
from orchestrator.state import SessionState
from orchestrator.timers import ContinuationScheduler, CoordinatorTimings
from telemetry import get_tracer, traced_span

logger = structlog.get_logger()

BOOKING_COMPLETION_TOOL = "complete_scheduling"


class TransferOutcome(str, Enum):
    COMPLETED = "completed"
    DESTINATION_MISSING = "destination_missing"


def _non_empty(value: Any) -> bool:
    return value is not None and value != ""


def build_transfer_metadata(current: Agent, destination: Agent, result: FunctionCallResult) -> AgentMetadata:
    """
    Merge metadata for the destination agent.

    Precedence, lowest first: destination defaults, current agent metadata,
    fields on the result. Identity fields prefer the current agent's
    non-empty value.
    """
    merged: Dict[str, Any] = {}
    merged.update(destination.default_metadata.model_dump(exclude_none=True))
    merged.update(current.metadata.model_dump(exclude_none=True))
    merged.update(result.metadata_fields())

    for key in IDENTITY_FIELDS:
        candidates = (
            current.metadata.get(key),
            destination.metadata.get(key),
            destination.default_metadata.get(key),
        )
        merged[key] = next((c for c in candidates if _non_empty(c)), None)
    if not merged.get("session_id"):
        merged["session_id"] = f"session_{uuid.uuid4().hex[:16]}"
    if not merged.get("language"):
        merged["language"] = DEFAULT_LANGUAGE

    merged["flow_context"] = result.flow_context or current.metadata.flow_context
    merged["pending_question"] = result.pending_question or current.metadata.pending_question
    merged["came_from"] = result.came_from or current.metadata.came_from or current.name

    for key in TRANSFER_CONTROL_FIELDS + ("silentTransfer",):
        merged.pop(key, None)
    return AgentMetadata.model_validate(merged)


class AgentTransferCoordinator:
    def __init__(
        self,
        state: SessionState,
        registry: AgentRegistry,
        channel: CommandChannel,
        tracker: ResponseLifecycleTracker,
        display: DisplayModeSynchronizer,
        executor: FunctionCallExecutor,
        ui_sink: UiSink,
        scheduler: ContinuationScheduler,
        timings: CoordinatorTimings,
    ):
        self.state = state
        self.registry = registry
        self.channel = channel
        self.tracker = tracker
        self.display = display
        self.executor = executor
        self.ui_sink = ui_sink
        self.scheduler = scheduler
        self.timings = timings
        self._tracer = get_tracer()

    async def settle_active_response(self) -> None:
        """Cancel the in-flight response and wait out the grace period."""
        if not self.tracker.is_active():
            return
        await self.channel.cancel_response()
        await asyncio.sleep(self.timings.cancel_grace)
        self.tracker.mark_idle("cancel_grace_elapsed")

    async def transfer(self, result: FunctionCallResult, call_id: Optional[str] = None) -> TransferOutcome:
        """
        Execute the transfer a result requests.

        Args:
            result: tool (or escalation) result naming `destination_agent`
            call_id: function call to answer when the transfer must be reported

        Returns:
            TransferOutcome.DESTINATION_MISSING leaves the active agent unchanged.
        """
        with traced_span(self._tracer, "agent.transfer"):
            current = self.registry.active
            destination = self.registry.get(result.destination_agent)
            if destination is None:
                error = AgentNotFound(result.destination_agent)
                logger.warning(
                    "agent_transfer_destination_missing",
                    session_id=self.state.session_id,
                    source=current.name,
                    destination=result.destination_agent,
                )
                if call_id:
                    await self.channel.send_function_output(call_id, {"error": error.error_message()})
                    await self.channel.request_response("transfer_destination_missing")
                return TransferOutcome.DESTINATION_MISSING

            self.state.transfer_epoch += 1
            epoch = self.state.transfer_epoch
            await self.settle_active_response()

            merged = build_transfer_metadata(current, destination, result)
            destination.metadata = merged
            self.registry.set_active(destination.name)
            self.state.begin_transfer(destination.name)

            silent = result.silent_transfer is not False
            follow_up = None
            if silent and destination.name == self.registry.primary_name and current.name != destination.name:
                follow_up = self._plan_return_to_primary(destination, epoch)
            destination.refresh_instructions()

            logger.info(
                "agent_transferred",
                session_id=self.state.session_id,
                source=current.name,
                destination=destination.name,
                silent=silent,
                flow_context=merged.flow_context,
            )

            await self.ui_sink.set_active_agent(destination.name, destination.metadata.to_dict())
            await self.channel.update_session(destination.instructions, destination.tool_definitions())

            if not silent:
                if call_id:
                    await self.channel.send_function_output(
                        call_id, {"status": "Transfer successful", "transferred_to": destination.name},
                    )
                await self.channel.request_response("transfer_confirmed")
                return TransferOutcome.COMPLETED

            if follow_up is not None:
                follow_up()
            elif destination.arrival_prompt:
                self.schedule_synthetic_turn(destination.name, destination.arrival_prompt, "transfer.arrival")
            return TransferOutcome.COMPLETED

    def _plan_return_to_primary(self, primary: Agent, epoch: int) -> Optional[Callable[[], None]]:
        """
        Consume the flow context that brought the conversation back.
        Clearing happens here, before anything is scheduled, so it cannot re-fire.
        """
        metadata = primary.metadata
        if metadata.has_flow_context(FlowContext.FROM_SCHEDULING_VERIFICATION, FlowContext.FROM_FULL_SCHEDULING):
            metadata.clear_flow_context()
            return lambda: self._schedule(
                "transfer.complete_booking", self.timings.followup_delay,
                lambda: self._complete_booking(epoch),
            )

        if metadata.has_flow_context(FlowContext.FROM_QUESTION_AUTH):
            question = metadata.pending_question
            metadata.clear_flow_context()
            metadata.pending_question = None
            if question and metadata.is_verified:
                return lambda: self.schedule_synthetic_turn(
                    primary.name, question, "transfer.pending_question", delay=self.timings.followup_delay,
                )
            # Nothing to re-ask; the primary agent still has to speak
            return lambda: self._schedule(
                "transfer.return_unverified", self.timings.response_create_delay,
                lambda: self._request_primary_response("return_unverified", epoch),
            )

        if metadata.has_flow_context(FlowContext.FROM_DIRECT_AUTH):
            metadata.clear_flow_context()
            return lambda: self._schedule(
                "transfer.acknowledge", self.timings.response_create_delay,
                lambda: self._request_primary_response("verification_acknowledged", epoch),
            )
        return None

    def _schedule(self, name: str, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        self.scheduler.schedule(name, delay, action)

    def _still_current(self, agent_name: str, epoch: int, step: str) -> bool:
        """True while no other hand-off has happened since the continuation was scheduled."""
        if self.registry.active_name == agent_name and self.state.transfer_epoch == epoch:
            return True
        logger.info(
            "transfer_continuation_superseded",
            session_id=self.state.session_id,
            step=step,
            expected=agent_name,
            active=self.registry.active_name,
        )
        return False

    def schedule_synthetic_turn(
        self,
        agent_name: str,
        text: str,
        name: str,
        delay: Optional[float] = None,
    ) -> None:
        """Inject one user-role turn for `agent_name` and ask for a response."""
        epoch = self.state.transfer_epoch

        async def _inject():
            if not self._still_current(agent_name, epoch, name):
                return
            await self.settle_active_response()
            if not self._still_current(agent_name, epoch, name):
                return
            await self.channel.send_user_turn(text, synthetic=True)
            await asyncio.sleep(self.timings.response_create_delay)
            if not self._still_current(agent_name, epoch, name):
                return
            await self.channel.request_response(name)

        self._schedule(
            f"{name}.{agent_name}",
            self.timings.synthetic_turn_delay if delay is None else delay,
            _inject,
        )

    async def _complete_booking(self, epoch: int) -> None:
        primary = self.registry.primary_name
        if not self._still_current(primary, epoch, "complete_booking"):
            return
        result = await self.executor.run_tool(BOOKING_COMPLETION_TOOL, {})
        if not self._still_current(primary, epoch, "complete_booking"):
            return
        await self.display.apply_result(result)
        text = result.message or result.error
        if text:
            await self.channel.send_assistant_message(text)
        await self.settle_active_response()
        if not self._still_current(primary, epoch, "complete_booking"):
            return
        await self.channel.request_response("booking_completed")

    async def _request_primary_response(self, reason: str, epoch: int) -> None:
        if not self._still_current(self.registry.primary_name, epoch, reason):
            return
        await self.channel.request_response(reason)
