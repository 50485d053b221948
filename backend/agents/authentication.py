"""
Authentication Agent - verifies the user's phone number with a one-time code.
"""

from typing import Optional
import structlog

from agents.tooling import AUTHENTICATION_AGENT, bind_tools
from agents.tools.auth_tools import submit_phone_number, verify_otp
from orchestrator.agent_registry import Agent
from schemas.results import DisplayMode
from schemas.session import AgentMetadata

logger = structlog.get_logger()

ARRIVAL_PROMPT = "I need to verify my details"


def build_authentication_instructions(metadata: AgentMetadata) -> str:
    return f"""You verify the user's identity. Always respond in {metadata.language or 'English'}.

1. Ask for the user's name and phone number (with country code), then call submit_phone_number.
2. Ask for the 6-digit code they received, then call verify_otp.
3. Do not answer property questions; they will be answered after verification.
"""


def create_authentication_agent(metadata: Optional[AgentMetadata] = None) -> Agent:
    tools, tool_logic = bind_tools(submit_phone_number, verify_otp)
    agent = Agent(
        name=AUTHENTICATION_AGENT,
        display_name="Verification Assistant",
        public_description="Verifies the user's phone number.",
        tools=tools,
        tool_logic=tool_logic,
        instructions_builder=build_authentication_instructions,
        metadata=metadata,
        default_ui_hint=DisplayMode.VERIFICATION_FORM,
        arrival_prompt=ARRIVAL_PROMPT,
    )
    logger.info("authentication_agent_created", tools=[t.name for t in tools])
    return agent
