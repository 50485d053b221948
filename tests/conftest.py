"""
Shared test fixtures for the realtime agent orchestrator tests.
"""

import json
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio

from agents import build_agent_registry
from orchestrator.commands import CommandSink
from orchestrator.display import UiSink
from orchestrator.escalation import EscalationConfig
from orchestrator.session import ConversationSession
from orchestrator.timers import CoordinatorTimings
from schemas.events import ClientCommand
from schemas.results import DisplayMode
from services.backend_client import PropertyBackendClient, set_backend_client

PROJECT_ID_MAP = {
    "Palm Heights": "11111111-1111-1111-1111-111111111111",
    "Marina Vista": "22222222-2222-2222-2222-222222222222",
}

BASE_METADATA = {
    "session_id": "session_test",
    "org_id": "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa",
    "chatbot_id": "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb",
    "language": "English",
    "org_name": "Acme Realty",
    "project_names": list(PROJECT_ID_MAP),
    "project_ids": list(PROJECT_ID_MAP.values()),
    "project_id_map": PROJECT_ID_MAP,
}


class RecordingCommandSink(CommandSink):
    """Collects outbound commands instead of sending them."""

    def __init__(self):
        self.commands: List[ClientCommand] = []

    async def send(self, command: ClientCommand) -> None:
        self.commands.append(command)

    def types(self) -> List[str]:
        return [c.type.value for c in self.commands]

    def count(self, command_type: str) -> int:
        return self.types().count(command_type)

    def items(self, item_type: str) -> List[Dict[str, Any]]:
        return [c.item for c in self.commands if c.item and c.item.get("type") == item_type]

    def function_outputs(self) -> List[Dict[str, Any]]:
        return [json.loads(i["output"]) for i in self.items("function_call_output")]

    def user_texts(self) -> List[str]:
        return [
            i["content"][0]["text"] for i in self.items("message")
            if i.get("role") == "user"
        ]

    def assistant_texts(self) -> List[str]:
        return [
            i["content"][0]["text"] for i in self.items("message")
            if i.get("role") == "assistant"
        ]


class RecordingUiSink(UiSink):
    """Keeps the latest value of every UI slot."""

    def __init__(self):
        self.modes: List[DisplayMode] = []
        self.slots: Dict[str, Any] = {}
        self.agents: List[str] = []
        self.agent_metadata: Dict[str, Any] = {}

    async def set_mode(self, mode: DisplayMode) -> None:
        self.modes.append(mode)

    async def set_property_list(self, data: Any) -> None:
        self.slots["property_list"] = data

    async def set_property_details(self, data: Any) -> None:
        self.slots["property_details"] = data

    async def set_image_gallery(self, data: Any) -> None:
        self.slots["image_gallery"] = data

    async def set_location_map(self, data: Any) -> None:
        self.slots["location_map"] = data

    async def set_booking_details(self, data: Any) -> None:
        self.slots["booking_details"] = data

    async def set_brochure(self, data: Any) -> None:
        self.slots["brochure"] = data

    async def set_active_agent(self, agent_name: str, metadata: Dict[str, Any]) -> None:
        self.agents.append(agent_name)
        self.agent_metadata = metadata


@pytest.fixture
def command_sink():
    return RecordingCommandSink()


@pytest.fixture
def ui_sink():
    return RecordingUiSink()


@pytest.fixture
def timings():
    """No artificial delays; time-boxed modes stay up for the whole test."""
    return CoordinatorTimings.immediate().model_copy(
        update={"verification_success_revert": 60.0, "booking_confirmation_revert": 60.0},
    )


@pytest.fixture
def escalation_config():
    return EscalationConfig(threshold=6)


@pytest_asyncio.fixture
async def session(command_sink, ui_sink, timings, escalation_config):
    """A session with the full agent set, starting on the property agent."""
    conversation = ConversationSession(
        "session_test",
        build_agent_registry(BASE_METADATA),
        command_sink,
        ui_sink,
        timings=timings,
        escalation=escalation_config,
    )
    yield conversation
    conversation.close()


class BackendRecorder:
    """httpx MockTransport handler answering the property backend endpoints."""

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.responses: Dict[str, Any] = {
            "project-details": {"properties": [
                {"name": "Palm Heights", "price": "1.2M"},
                {"name": "Marina Vista", "price": "900K"},
            ]},
            "property-media": {"items": ["a.jpg", "b.jpg"]},
            "available-slots": {"slots": {"2026-11-03": ["10:00 AM", "11:00 AM"]}},
            "schedule-visit": {"success": True},
            "phone-auth": {"success": True, "verified": True},
        }
        self.fail_paths: Dict[str, int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")
        self.requests.append({"path": path, "body": body, "headers": dict(request.headers)})
        if path in self.fail_paths:
            return httpx.Response(self.fail_paths[path], json={"error": "backend failure"})
        return httpx.Response(200, json=self.responses.get(path, {}))

    def calls(self, path: str) -> List[Dict[str, Any]]:
        return [r["body"] for r in self.requests if r["path"] == path]


@pytest_asyncio.fixture
async def backend():
    """Install a PropertyBackendClient backed by a MockTransport."""
    recorder = BackendRecorder()
    client = PropertyBackendClient(
        base_url="http://backend.test/functions/v1",
        api_key="test-key",
        transport=httpx.MockTransport(recorder),
    )
    set_backend_client(client)
    yield recorder
    await client.close()
    set_backend_client(None)
