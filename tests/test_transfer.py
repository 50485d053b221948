"""
Tests for agent transfers: metadata merge, response settling, silent hand-offs
and the return-to-primary flows.
"""

import asyncio

import pytest

from agents import build_agent_registry
from agents.authentication import create_authentication_agent
from agents.real_estate import create_real_estate_agent
from agents.schedule_meeting import create_schedule_meeting_agent
from orchestrator.agent_registry import AgentRegistry
from orchestrator.lifecycle import ResponseState
from orchestrator.session import ConversationSession
from orchestrator.transfer import TransferOutcome, build_transfer_metadata
from schemas.results import DisplayMode, FlowContext, FunctionCallResult
from schemas.session import AgentMetadata


def _transfer_to(destination, **fields):
    return FunctionCallResult(destination_agent=destination, silent_transfer=True, **fields)


class TestBuildTransferMetadata:
    def test_identity_fields_come_from_current_agent(self):
        current = create_real_estate_agent(AgentMetadata(
            session_id="s1", org_id="org-a", chatbot_id="bot-a", language="Arabic",
        ))
        destination = create_schedule_meeting_agent(AgentMetadata(org_id="org-b", language="French"))

        merged = build_transfer_metadata(current, destination, _transfer_to("schedule_meeting"))

        assert merged.session_id == "s1"
        assert merged.org_id == "org-a"
        assert merged.chatbot_id == "bot-a"
        assert merged.language == "Arabic"

    def test_destination_fills_identity_gaps(self):
        current = create_real_estate_agent(AgentMetadata(org_id="org-a"))
        destination = create_schedule_meeting_agent(AgentMetadata(chatbot_id="bot-b"))

        merged = build_transfer_metadata(current, destination, _transfer_to("schedule_meeting"))

        assert merged.org_id == "org-a"
        assert merged.chatbot_id == "bot-b"
        assert merged.language == "English"
        assert merged.session_id.startswith("session_")

    def test_control_fields_are_stripped(self):
        current = create_real_estate_agent(AgentMetadata(org_id="org-a"))
        destination = create_authentication_agent()
        result = FunctionCallResult.model_validate({
            "destination_agent": "authentication",
            "silentTransfer": True,
            "success": True,
            "error": None,
            "message": "moving on",
            "customer_name": "Sam",
        })

        merged = build_transfer_metadata(current, destination, result).to_dict()

        assert merged["customer_name"] == "Sam"
        for key in ("destination_agent", "silent_transfer", "silentTransfer", "success", "error", "message"):
            assert key not in merged

    def test_result_fields_override_current_metadata(self):
        current = create_real_estate_agent(AgentMetadata(pending_question="old question"))
        destination = create_authentication_agent()
        result = _transfer_to(
            "authentication",
            came_from="real_estate",
            flow_context=FlowContext.FROM_QUESTION_AUTH,
            pending_question="Where is Palm Heights?",
        )

        merged = build_transfer_metadata(current, destination, result)

        assert merged.flow_context == FlowContext.FROM_QUESTION_AUTH
        assert merged.pending_question == "Where is Palm Heights?"
        assert merged.came_from == "real_estate"

    def test_stale_destination_state_does_not_survive(self):
        current = create_real_estate_agent(AgentMetadata(org_id="org-a"))
        destination = create_authentication_agent()
        destination.metadata.flow_context = FlowContext.FROM_DIRECT_AUTH

        merged = build_transfer_metadata(current, destination, _transfer_to("authentication"))

        assert merged.flow_context is None
        assert merged.came_from == "real_estate"


class TestAgentTransferCoordinator:
    @pytest.mark.asyncio
    async def test_missing_destination_keeps_active_agent(self, session, command_sink):
        outcome = await session.coordinator.transfer(_transfer_to("billing"), call_id="call_1")

        assert outcome == TransferOutcome.DESTINATION_MISSING
        assert session.registry.active_name == "real_estate"
        assert command_sink.function_outputs() == [{"error": "Agent billing not found."}]
        assert command_sink.count("response.create") == 1
        assert command_sink.count("session.update") == 0

    @pytest.mark.asyncio
    async def test_in_flight_response_is_cancelled_first(self, session, command_sink):
        session.tracker.mark_active("resp_1", owner="real_estate")

        await session.coordinator.transfer(_transfer_to("schedule_meeting"))

        types = command_sink.types()
        assert types[0] == "response.cancel"
        assert types.index("response.cancel") < types.index("session.update")
        assert session.tracker.state == ResponseState.IDLE

    @pytest.mark.asyncio
    async def test_silent_transfer_injects_one_arrival_turn(self, session, command_sink, ui_sink):
        await session.coordinator.transfer(_transfer_to("schedule_meeting", came_from="real_estate"))

        assert session.registry.active_name == "schedule_meeting"
        assert session.state.is_transferring
        assert session.state.transfer_target == "schedule_meeting"
        assert ui_sink.agents == ["schedule_meeting"]
        assert command_sink.items("function_call_output") == []

        await session.scheduler.drain("transfer")

        assert command_sink.user_texts() == [
            "Hello, I need help with booking a visit. Please show me available dates.",
        ]
        assert command_sink.count("response.create") == 1
        update = next(c for c in command_sink.commands if c.type.value == "session.update")
        assert "get_available_slots" in [t["name"] for t in update.session["tools"]]

    @pytest.mark.asyncio
    async def test_arrival_turn_skipped_when_agent_changed(self, session, command_sink):
        await session.coordinator.transfer(_transfer_to("schedule_meeting"))
        session.registry.set_active("real_estate")

        await session.scheduler.drain("transfer")

        assert command_sink.user_texts() == []

    @pytest.mark.asyncio
    async def test_non_silent_transfer_reports_output(self, session, command_sink):
        result = FunctionCallResult(destination_agent="schedule_meeting", silent_transfer=False)

        await session.coordinator.transfer(result, call_id="call_1")
        await session.scheduler.drain("transfer")

        assert command_sink.function_outputs() == [
            {"status": "Transfer successful", "transferred_to": "schedule_meeting"},
        ]
        assert command_sink.count("response.create") == 1
        assert command_sink.user_texts() == []


class TestReturnToPrimary:
    @pytest.mark.asyncio
    async def test_pending_question_is_asked_once(self, session, command_sink):
        session.registry.set_active("authentication")
        result = _transfer_to(
            "real_estate",
            is_verified=True,
            came_from="authentication",
            flow_context=FlowContext.FROM_QUESTION_AUTH,
            pending_question="Where is Palm Heights?",
        )

        await session.coordinator.transfer(result)

        primary = session.registry.active
        assert primary.name == "real_estate"
        assert primary.metadata.flow_context is None
        assert primary.metadata.pending_question is None
        assert primary.metadata.is_verified is True

        await session.scheduler.drain("transfer")

        assert command_sink.user_texts() == ["Where is Palm Heights?"]
        assert command_sink.count("response.create") == 1

    @pytest.mark.asyncio
    async def test_unverified_return_drops_pending_question_but_responds(self, session, command_sink):
        session.registry.set_active("authentication")
        result = _transfer_to(
            "real_estate",
            flow_context=FlowContext.FROM_QUESTION_AUTH,
            pending_question="Where is Palm Heights?",
        )

        await session.coordinator.transfer(result)
        await session.scheduler.drain("transfer")

        assert session.registry.active.metadata.flow_context is None
        assert command_sink.user_texts() == []
        assert command_sink.count("response.create") == 1

    @pytest.mark.asyncio
    async def test_direct_auth_return_is_acknowledged(self, session, command_sink):
        session.registry.set_active("authentication")
        result = _transfer_to("real_estate", is_verified=True, flow_context=FlowContext.FROM_DIRECT_AUTH)

        await session.coordinator.transfer(result)
        await session.scheduler.drain("transfer")

        assert session.registry.active.metadata.flow_context is None
        assert command_sink.user_texts() == []
        assert command_sink.count("response.create") == 1

    @pytest.mark.asyncio
    async def test_scheduling_verification_return_completes_booking(self, session, command_sink, ui_sink, backend):
        session.registry.set_active("authentication")
        auth = session.registry.active
        auth.metadata.set("selected_date", "2026-11-03")
        auth.metadata.set("selected_time", "11:00 AM")
        auth.metadata.set("customer_name", "Sam")
        auth.metadata.set("phone_number", "+15550001111")
        auth.metadata.set("property_name", "Palm Heights")
        result = _transfer_to(
            "real_estate",
            is_verified=True,
            came_from="authentication",
            flow_context=FlowContext.FROM_SCHEDULING_VERIFICATION,
        )

        await session.coordinator.transfer(result)
        await session.scheduler.drain("transfer")

        booking = backend.calls("schedule-visit")
        assert len(booking) == 1
        assert booking[0]["visit_date"] == "2026-11-03"
        assert booking[0]["customer_name"] == "Sam"

        primary = session.registry.active
        assert primary.metadata.has_scheduled is True
        assert primary.metadata.flow_context is None
        assert session.display.mode == DisplayMode.BOOKING_CONFIRMATION
        assert ui_sink.slots["booking_details"]["propertyName"] == "Palm Heights"
        assert command_sink.assistant_texts() == [
            "Great news, Sam! Your visit to Palm Heights has been scheduled for "
            "2026-11-03 at 11:00 AM. You'll receive all details shortly!",
        ]
        assert command_sink.count("response.create") == 1


class TestCustomRegistry:
    @pytest.mark.asyncio
    async def test_identity_survives_round_trip(self, command_sink, ui_sink, timings):
        registry = AgentRegistry(
            [
                create_real_estate_agent(AgentMetadata(session_id="s9", org_id="org-a", language="Hindi")),
                create_schedule_meeting_agent(AgentMetadata(org_id="org-b")),
                create_authentication_agent(),
            ],
            primary="real_estate",
        )
        session = ConversationSession("s9", registry, command_sink, ui_sink, timings=timings)

        await session.coordinator.transfer(_transfer_to("schedule_meeting"))
        await session.coordinator.transfer(_transfer_to("authentication"))
        await session.coordinator.transfer(_transfer_to("real_estate"))

        metadata = session.registry.active.metadata
        assert (metadata.session_id, metadata.org_id, metadata.language) == ("s9", "org-a", "Hindi")
        session.close()


class TestContinuationOrdering:
    @pytest.mark.asyncio
    async def test_arrival_turn_superseded_during_cancel_grace(self, command_sink, ui_sink, timings):
        timings = timings.model_copy(update={"cancel_grace": 0.05})
        session = ConversationSession(
            "s_race", build_agent_registry({"session_id": "s_race"}), command_sink, ui_sink, timings=timings,
        )
        await session.coordinator.transfer(_transfer_to("schedule_meeting"))
        session.tracker.mark_active("resp_2", owner="schedule_meeting")

        # The scheduling arrival turn is now waiting for the cancellation to settle
        await asyncio.sleep(0.01)
        await session.coordinator.transfer(_transfer_to("authentication"))
        await session.scheduler.drain("transfer")

        assert session.registry.active_name == "authentication"
        assert command_sink.user_texts() == ["I need to verify my details"]
        session.close()

    @pytest.mark.asyncio
    async def test_continuations_wait_for_the_session_lock(self, session, command_sink):
        async with session.lock:
            session.coordinator.schedule_synthetic_turn("real_estate", "Tell me about parking", "transfer.test")
            await asyncio.sleep(0.01)
            assert command_sink.user_texts() == []

        await session.scheduler.drain("transfer")

        assert command_sink.user_texts() == ["Tell me about parking"]
        assert command_sink.count("response.create") == 1
