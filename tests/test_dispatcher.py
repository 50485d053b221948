"""
End-to-end dispatcher scenarios driven by backend events.
"""

import json

import pytest

from agents import build_agent_registry
from orchestrator.agent_registry import Agent, AgentRegistry, ToolSpec
from orchestrator.escalation import EscalationConfig
from orchestrator.lifecycle import ResponseState
from orchestrator.session import ConversationSession
from schemas.results import DisplayMode, FlowContext, FunctionCallResult
from schemas.session import SessionStatus, TranscriptRole


def user_item(item_id, text):
    return {
        "type": "conversation.item.created",
        "item": {
            "id": item_id,
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        },
    }


def assistant_item(item_id, text=""):
    return {
        "type": "conversation.item.created",
        "item": {
            "id": item_id,
            "type": "message",
            "role": "assistant",
            "content": [{"type": "text", "text": text}],
        },
    }


def transcription(item_id, text):
    return {
        "type": "conversation.item.input_audio_transcription.completed",
        "item_id": item_id,
        "transcript": text,
    }


def response_created(response_id):
    return {"type": "response.created", "response": {"id": response_id, "status": "in_progress"}}


def response_done(response_id, *calls):
    output = [
        {"type": "function_call", "name": name, "call_id": call_id, "arguments": json.dumps(args)}
        for name, call_id, args in calls
    ]
    return {"type": "response.done", "response": {"id": response_id, "status": "completed", "output": output}}


async def run_response(session, response_id, *calls):
    await session.handle_event(response_created(response_id))
    await session.handle_event(response_done(response_id, *calls))


def _silent(destination):
    return FunctionCallResult(destination_agent=destination, silent_transfer=True)


async def _transfer_to_nowhere(args, agent, transcript):
    return {"destination_agent": "nowhere", "silentTransfer": True}


QUESTIONS = [
    "What is the price of a two bedroom at Palm Heights?",
    "Does Marina Vista have a gym?",
    "How far is Palm Heights from the airport?",
    "Is there covered parking?",
    "What are the payment plans?",
    "When is the handover date for Marina Vista?",
]


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_session_created_connects(self, session):
        await session.handle_event({"type": "session.created", "session": {}})
        assert session.state.status == SessionStatus.CONNECTED
        assert session.transcript.items()[-1].text == "Connection established."

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_events_are_ignored(self, session, command_sink):
        await session.handle_event({"no_type": True})
        await session.handle_event({"type": "rate_limits.updated"})
        await session.handle_event({"type": "something.new"})
        assert command_sink.commands == []
        assert len(session.transcript) == 0

    @pytest.mark.asyncio
    async def test_duplicate_active_response_is_benign(self, session, command_sink):
        await session.channel.request_response("test")

        await session.handle_event({
            "type": "error",
            "error": {"code": "conversation_already_has_active_response", "message": "busy"},
        })

        assert session.tracker.state == ResponseState.ACTIVE
        assert session.channel.gate.deferred
        assert len(session.transcript) == 0

        await session.handle_event({"type": "response.done", "response": {"status": "completed", "output": []}})
        assert command_sink.count("response.create") == 2

    @pytest.mark.asyncio
    async def test_cancel_not_active_marks_idle(self, session):
        session.tracker.mark_active("resp_1")
        session.tracker.mark_cancelling()

        await session.handle_event({
            "type": "error",
            "error": {"code": "response_cancel_not_active", "message": "nothing to cancel"},
        })

        assert session.tracker.state == ResponseState.IDLE
        assert len(session.transcript) == 0

    @pytest.mark.asyncio
    async def test_fatal_error_disconnects(self, session):
        await session.handle_event({"type": "session.created"})
        await session.handle_event({"type": "error", "error": {"code": "session_expired", "message": "Expired"}})

        assert session.state.status == SessionStatus.DISCONNECTED
        assert session.transcript.items()[-1].text == "Server Error (session_expired): Expired"

    @pytest.mark.asyncio
    async def test_session_error_is_surfaced(self, session):
        await session.handle_event({"type": "session.error", "error": {"message": "Socket closed"}})
        assert session.transcript.items()[-1].text == "Session Error: Socket closed"
        assert session.state.status == SessionStatus.DISCONNECTED


class TestTranscript:
    @pytest.mark.asyncio
    async def test_terminal_items_are_not_recreated(self, session):
        await session.handle_event(assistant_item("item_a", "Hello"))
        await session.handle_event({"type": "response.output_item.done", "item": {"id": "item_a"}})
        await session.handle_event(assistant_item("item_a", "Hello again"))

        items = session.transcript.items()
        assert len(items) == 1
        assert items[0].text == "Hello"

    @pytest.mark.asyncio
    async def test_assistant_deltas_append(self, session):
        await session.handle_event(assistant_item("item_a"))
        await session.handle_event({"type": "response.audio_transcript.delta", "item_id": "item_a", "delta": "Hi "})
        await session.handle_event({"type": "response.output_audio_transcript.delta", "item_id": "item_a", "delta": "there"})
        assert session.transcript.get("item_a").text == "Hi there"

    @pytest.mark.asyncio
    async def test_empty_transcription_shows_inaudible(self, session):
        await session.handle_event(transcription("item_u", "  "))
        item = session.transcript.get("item_u")
        assert item.role == TranscriptRole.USER
        assert item.text == "[inaudible]"
        assert session.registry.active.metadata.user_question_count == 0

    @pytest.mark.asyncio
    async def test_trigger_messages_are_hidden(self, session):
        await session.handle_event(user_item("item_t", "{trigger msg: show available slots}"))
        assert session.transcript.items() == []
        assert session.transcript.get("item_t").hidden

    @pytest.mark.asyncio
    async def test_hidden_prefixes_follow_escalation_config(self, command_sink, ui_sink, timings):
        config = EscalationConfig(ignored_prefixes=["[kiosk]"])
        session = ConversationSession(
            "s_kiosk", build_agent_registry({"session_id": "s_kiosk"}), command_sink, ui_sink,
            timings=timings, escalation=config,
        )

        await session.handle_event(user_item("item_k", "[kiosk] show brochure"))

        assert session.transcript.get("item_k").hidden
        assert session.registry.active.metadata.user_question_count == 0
        session.close()


class TestQuestionCounting:
    @pytest.mark.asyncio
    async def test_echo_and_transcription_count_once(self, session):
        await session.handle_event(user_item("item_1", "What is the price of the villa?"))
        await session.handle_event(transcription("item_1", "What is the price of the villa?"))
        await session.handle_event(transcription("item_1", "What is the price of the villa?"))

        assert session.registry.active.metadata.user_question_count == 1

    @pytest.mark.asyncio
    async def test_synthetic_turns_are_not_counted(self, session):
        item_id = await session.channel.send_user_turn("Tell me about Palm Heights amenities")
        await session.handle_event(user_item(item_id, "Tell me about Palm Heights amenities"))

        assert session.registry.active.metadata.user_question_count == 0
        assert session.transcript.get(item_id).hidden

    @pytest.mark.asyncio
    async def test_six_questions_escalate_after_playback(self, session, command_sink, ui_sink):
        for i, question in enumerate(QUESTIONS):
            await session.handle_event(user_item(f"item_{i}", question))
        assert session.state.escalation_triggered

        await run_response(session, "resp_1")
        assert session.registry.active_name == "real_estate"

        await session.handle_event({"type": "output_audio_buffer.started"})
        await session.handle_event({"type": "output_audio_buffer.stopped"})

        auth = session.registry.active
        assert auth.name == "authentication"
        assert session.display.mode == DisplayMode.VERIFICATION_FORM
        assert auth.metadata.flow_context == FlowContext.FROM_QUESTION_AUTH
        assert auth.metadata.pending_question == QUESTIONS[-1]
        assert auth.metadata.came_from == "real_estate"
        assert auth.metadata.org_id == "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"

        await session.scheduler.drain("transfer")
        assert command_sink.user_texts() == ["I need to verify my details"]

        await session.handle_event({"type": "output_audio_buffer.stopped"})
        assert ui_sink.agents == ["authentication"]

    @pytest.mark.asyncio
    async def test_scheduling_hand_off_in_same_turn_cancels_escalation(self, session, command_sink):
        booking_request = "Yes, I'd like to schedule a visit for Palm Heights"
        for i, question in enumerate(QUESTIONS[:5]):
            await session.handle_event(user_item(f"item_{i}", question))
        await session.handle_event(user_item("item_5", booking_request))
        assert session.state.escalation_pending

        await run_response(session, "resp_1", ("track_user_message", "call_1", {"message": booking_request}))
        assert session.registry.active_name == "schedule_meeting"

        await session.handle_event({"type": "output_audio_buffer.stopped"})
        await session.scheduler.drain("transfer")

        assert session.registry.active_name == "schedule_meeting"
        assert not session.state.escalation_pending
        assert command_sink.user_texts() == [
            "Hello, I need help with booking a visit. Please show me available dates.",
        ]

    @pytest.mark.asyncio
    async def test_text_only_session_escalates_on_response_done(self, command_sink, ui_sink, timings, escalation_config):
        session = ConversationSession(
            "s_text", build_agent_registry({"session_id": "s_text"}), command_sink, ui_sink,
            timings=timings, escalation=escalation_config, audio_output=False,
        )
        for i, question in enumerate(QUESTIONS):
            await session.handle_event(user_item(f"item_{i}", question))

        await run_response(session, "resp_1")

        assert session.registry.active_name == "authentication"
        session.close()


class TestFunctionCalls:
    @pytest.mark.asyncio
    async def test_tool_output_and_single_response_per_batch(self, session, command_sink, backend):
        await run_response(
            session, "resp_1",
            ("track_user_message", "call_1", {"message": "Show me all projects"}),
            ("get_project_details", "call_2", {}),
        )

        outputs = command_sink.function_outputs()
        assert len(outputs) == 2
        assert outputs[0]["message_tracked"] is True
        assert outputs[1]["ui_display_hint"] == "property-list"
        assert command_sink.count("response.create") == 1
        assert session.display.mode == DisplayMode.PROPERTY_LIST

    @pytest.mark.asyncio
    async def test_internal_tool_preserves_display(self, session, command_sink, backend):
        await run_response(session, "resp_1", ("get_project_details", "call_1", {}))
        await run_response(session, "resp_2", ("detect_property_in_message", "call_2", {"message": "Palm Heights please"}))

        assert session.display.mode == DisplayMode.PROPERTY_LIST

    @pytest.mark.asyncio
    async def test_metadata_change_refreshes_session(self, session, command_sink):
        await run_response(session, "resp_1", ("update_active_project", "call_1", {"project_name": "marina vista"}))

        assert session.registry.active.metadata.active_project == "Marina Vista"
        update = [c for c in command_sink.commands if c.type.value == "session.update"]
        assert len(update) == 1
        assert "Active project: Marina Vista" in update[0].session["instructions"]

    @pytest.mark.asyncio
    async def test_throwing_tool_still_answers(self, command_sink, ui_sink, timings):
        async def explode(args, agent, transcript):
            raise ValueError("database unavailable")

        agent = Agent(
            name="real_estate",
            display_name="Property Assistant",
            public_description="test",
            tools=[ToolSpec(name="explode", description="explodes")],
            tool_logic={"explode": explode},
            instructions_builder=lambda m: "test",
        )
        session = ConversationSession(
            "s_err", AgentRegistry([agent], primary="real_estate"), command_sink, ui_sink, timings=timings,
        )

        await run_response(session, "resp_1", ("explode", "call_1", {}))

        assert command_sink.function_outputs() == [
            {"error": "Failed to process function call explode: database unavailable"},
        ]
        assert command_sink.types()[-1] == "response.create"
        session.close()

    @pytest.mark.asyncio
    async def test_invalid_arguments_still_answer(self, session, command_sink):
        await session.handle_event(response_created("resp_1"))
        await session.handle_event({
            "type": "response.done",
            "response": {"id": "resp_1", "output": [
                {"type": "function_call", "name": "track_user_message", "call_id": "call_1", "arguments": "{nope"},
            ]},
        })

        outputs = command_sink.function_outputs()
        assert outputs[0]["error"].startswith("Invalid arguments for function track_user_message:")
        assert command_sink.count("response.create") == 1

    @pytest.mark.asyncio
    async def test_calls_deferred_while_response_active(self, session, command_sink):
        await session.handle_event(response_created("resp_1"))
        await session.handle_event(response_created("resp_2"))
        await session.handle_event(response_done("resp_1", ("track_user_message", "call_1", {"message": "Hi there friend"})))

        assert session.state.deferred_calls
        assert command_sink.function_outputs() == []

        await session.handle_event(response_done("resp_2"))

        assert len(command_sink.function_outputs()) == 1
        assert command_sink.count("response.create") == 1
        assert session.state.deferred_calls == []


class TestTransfers:
    @pytest.mark.asyncio
    async def test_initiate_scheduling_hands_off(self, session, command_sink, ui_sink):
        session.registry.active.metadata.active_project = "Palm Heights"

        await run_response(session, "resp_1", ("initiate_scheduling", "call_1", {}))

        scheduler_agent = session.registry.active
        assert scheduler_agent.name == "schedule_meeting"
        assert scheduler_agent.metadata.get("property_name") == "Palm Heights"
        assert session.display.mode == DisplayMode.SCHEDULING_FORM
        assert command_sink.items("function_call_output") == []
        assert command_sink.count("response.create") == 0

        await session.scheduler.drain("transfer")
        assert command_sink.count("response.create") == 1

    @pytest.mark.asyncio
    async def test_calls_after_transfer_in_same_batch_are_skipped(self, session, command_sink):
        await run_response(
            session, "resp_1",
            ("initiate_scheduling", "call_1", {}),
            ("get_project_details", "call_2", {}),
        )

        assert session.registry.active_name == "schedule_meeting"
        assert command_sink.items("function_call_output") == []

    @pytest.mark.asyncio
    async def test_old_agent_response_after_transfer_is_stale(self, session, command_sink):
        await session.handle_event(response_created("resp_old"))
        await session.coordinator.transfer(
            _silent("schedule_meeting"),
        )
        command_sink.commands.clear()

        await session.handle_event(response_done("resp_old", ("get_available_slots", "call_1", {})))

        assert command_sink.function_outputs() == []
        assert not session.state.is_transferring

    @pytest.mark.asyncio
    async def test_new_agent_response_runs_calls(self, session, command_sink, backend):
        await session.coordinator.transfer(_silent("schedule_meeting"))
        await session.scheduler.drain("transfer")

        await session.handle_event(response_created("resp_new"))
        await session.handle_event(response_done("resp_new", ("get_available_slots", "call_1", {})))

        outputs = command_sink.function_outputs()
        assert outputs[0]["ui_display_hint"] == "scheduling-form"
        assert outputs[0]["slots"] == {"2026-11-03": ["10:00 AM", "11:00 AM"]}

    @pytest.mark.asyncio
    async def test_missing_destination_reports_one_error(self, session, command_sink):
        session.registry.set_active("schedule_meeting")
        session.registry.active.tool_logic["bad_transfer"] = _transfer_to_nowhere

        await run_response(session, "resp_1", ("bad_transfer", "call_1", {}))

        assert session.registry.active_name == "schedule_meeting"
        assert command_sink.function_outputs() == [{"error": "Agent nowhere not found."}]
        assert command_sink.count("response.create") == 1

    @pytest.mark.asyncio
    async def test_scheduling_agent_vetoes_transfer(self, session, command_sink):
        session.registry.set_active("schedule_meeting")

        await run_response(session, "resp_1", ("transfer_agents", "call_1", {"destination_agent": "real_estate"}))

        assert session.registry.active_name == "schedule_meeting"
        output = command_sink.function_outputs()[0]
        assert output["error"] == "get_available_slots must be called first before any transfers"
        assert output["success"] is False
        assert session.display.mode == DisplayMode.SCHEDULING_FORM

    @pytest.mark.asyncio
    async def test_authentication_messages_keep_verification_form(self, session):
        await session.coordinator.transfer(_silent("authentication"))
        await session.display.set_mode(DisplayMode.CHAT)
        await session.handle_event(response_created("resp_auth"))

        await session.handle_event(assistant_item("item_auth", "Please share your phone number."))

        assert session.display.mode == DisplayMode.VERIFICATION_FORM
