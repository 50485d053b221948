"""
Conversational agents for the realtime property assistant.
Each agent bundles @tool-declared handlers with its own metadata.
"""

from typing import Any, Dict, Optional

from agents.authentication import create_authentication_agent
from agents.real_estate import create_real_estate_agent
from agents.schedule_meeting import create_schedule_meeting_agent
from agents.tooling import AUTHENTICATION_AGENT, REAL_ESTATE_AGENT, SCHEDULE_MEETING_AGENT
from orchestrator.agent_registry import AgentRegistry
from schemas.session import AgentMetadata


# Factory map: agent name -> create function
agent_factories = {
    REAL_ESTATE_AGENT: create_real_estate_agent,
    SCHEDULE_MEETING_AGENT: create_schedule_meeting_agent,
    AUTHENTICATION_AGENT: create_authentication_agent,
}


def build_agent_registry(base_metadata: Optional[Dict[str, Any]] = None) -> AgentRegistry:
    """
    Build the fixed agent set for one session.
    Every agent starts from its own copy of the session's base metadata.
    """
    agents = [
        factory(AgentMetadata.model_validate(dict(base_metadata or {})))
        for factory in agent_factories.values()
    ]
    return AgentRegistry(agents, primary=REAL_ESTATE_AGENT)


__all__ = [
    "agent_factories",
    "build_agent_registry",
    "create_real_estate_agent",
    "create_schedule_meeting_agent",
    "create_authentication_agent",
]
