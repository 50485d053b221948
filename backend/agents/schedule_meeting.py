"""
Schedule Meeting Agent - books site visits.
"""

from typing import Optional
import structlog

from agents.tooling import SCHEDULE_MEETING_AGENT, bind_tools
from agents.tools.scheduling_tools import (
    complete_scheduling,
    get_available_slots,
    request_authentication,
    schedule_visit,
    transfer_agents,
)
from orchestrator.agent_registry import Agent
from schemas.results import DisplayMode
from schemas.session import AgentMetadata

logger = structlog.get_logger()

ARRIVAL_PROMPT = "Hello, I need help with booking a visit. Please show me available dates."


def build_scheduling_instructions(metadata: AgentMetadata) -> str:
    property_name = metadata.get("property_name") or metadata.active_project or "the selected property"
    return f"""You schedule site visits for {property_name}. Always respond in {metadata.language or 'English'}.

1. Call get_available_slots first, before anything else.
2. When the user picks a date and time, call schedule_visit.
3. If the user must verify their phone number, call request_authentication.
4. Never discuss topics other than scheduling the visit.
"""


def create_schedule_meeting_agent(metadata: Optional[AgentMetadata] = None) -> Agent:
    tools, tool_logic = bind_tools(
        get_available_slots,
        schedule_visit,
        request_authentication,
        complete_scheduling,
        transfer_agents,
    )
    agent = Agent(
        name=SCHEDULE_MEETING_AGENT,
        display_name="Scheduling Assistant",
        public_description="Books site visits for a selected property.",
        tools=tools,
        tool_logic=tool_logic,
        instructions_builder=build_scheduling_instructions,
        metadata=metadata,
        default_ui_hint=DisplayMode.SCHEDULING_FORM,
        arrival_prompt=ARRIVAL_PROMPT,
    )
    logger.info("schedule_meeting_agent_created", tools=[t.name for t in tools])
    return agent
