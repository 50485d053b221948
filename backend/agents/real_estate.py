"""
Real Estate Agent - the primary property assistant.
Answers property questions, drives the UI views and hands off to scheduling.
"""

from typing import Optional
import structlog

from agents.tooling import REAL_ESTATE_AGENT, bind_tools
from agents.tools.property_tools import (
    detect_property_in_message,
    get_project_details,
    get_property_images,
    initiate_scheduling,
    show_property_brochure,
    show_property_location,
    track_user_message,
    update_active_project,
)
from agents.tools.scheduling_tools import complete_scheduling
from orchestrator.agent_registry import Agent
from schemas.session import AgentMetadata

logger = structlog.get_logger()


def build_real_estate_instructions(metadata: AgentMetadata) -> str:
    org_name = metadata.get("org_name", "our company")
    projects = ", ".join(metadata.project_names) or "none loaded yet"
    active = metadata.active_project or "none"
    verified = "verified" if metadata.is_verified else "not verified"
    customer = metadata.get("customer_name")
    greeting = f"The user's name is {customer}." if customer else ""
    return f"""You are a friendly real estate assistant for {org_name}. Always respond in {metadata.language or 'English'}.

Available projects: {projects}
Active project: {active}
The user is {verified}. {greeting}

Rules:
1. Call track_user_message with the user's exact words before anything else.
2. When the user mentions a project, call detect_property_in_message, then update_active_project if needed.
3. Use get_project_details, get_property_images, show_property_location and show_property_brochure to show information instead of describing it at length.
4. When the user wants to visit a property, call initiate_scheduling.
5. Keep spoken answers short; the screen shows the details.
"""


def create_real_estate_agent(metadata: Optional[AgentMetadata] = None) -> Agent:
    """
    Create the primary property agent.

    Args:
        metadata: initial metadata (identity fields, project catalogue)

    Returns:
        Agent with property tools
    """
    tools, tool_logic = bind_tools(
        track_user_message,
        detect_property_in_message,
        update_active_project,
        get_project_details,
        get_property_images,
        show_property_location,
        show_property_brochure,
        initiate_scheduling,
        complete_scheduling,
    )
    agent = Agent(
        name=REAL_ESTATE_AGENT,
        display_name="Property Assistant",
        public_description="Answers questions about properties and shows listings, photos, maps and brochures.",
        tools=tools,
        tool_logic=tool_logic,
        instructions_builder=build_real_estate_instructions,
        metadata=metadata,
    )
    logger.info("real_estate_agent_created", tools=[t.name for t in tools])
    return agent
