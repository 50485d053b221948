"""
Agent Registry - the fixed set of agents for one conversation session.
Each agent bundles tool declarations, tool handlers and mutable metadata.
The registry only switches which agent is active; it never creates agents mid-session.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from pydantic import BaseModel, Field

from schemas.results import DisplayMode, FunctionCallResult
from schemas.session import AgentMetadata
from orchestrator.errors import AgentNotFound

ToolReturn = Union[Dict[str, Any], FunctionCallResult]
ToolHandler = Callable[[Dict[str, Any], "Agent", Any], Awaitable[ToolReturn]]
InstructionsBuilder = Callable[[AgentMetadata], str]


class ToolSpec(BaseModel):
    """Declarative function signature exposed to the backend."""
    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    internal: bool = False  # management tools keep the current display mode

    def to_definition(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class Agent:
    """One conversational persona: tools, handlers and metadata."""

    def __init__(
        self,
        name: str,
        display_name: str,
        public_description: str,
        tools: List[ToolSpec],
        tool_logic: Dict[str, ToolHandler],
        instructions_builder: InstructionsBuilder,
        metadata: Optional[AgentMetadata] = None,
        default_ui_hint: DisplayMode = DisplayMode.CHAT,
        arrival_prompt: Optional[str] = None,
    ):
        self.name = name
        self.display_name = display_name
        self.public_description = public_description
        self.tools = tools
        self.tool_logic = tool_logic
        self.default_ui_hint = default_ui_hint
        self.arrival_prompt = arrival_prompt
        self._instructions_builder = instructions_builder
        self.metadata = metadata or AgentMetadata()
        self.default_metadata = self.metadata.model_copy(deep=True)
        self.instructions = instructions_builder(self.metadata)

    def handler_for(self, function_name: str) -> Optional[ToolHandler]:
        return self.tool_logic.get(function_name)

    def is_internal_tool(self, function_name: str) -> bool:
        return any(t.name == function_name and t.internal for t in self.tools)

    def tool_definitions(self) -> List[Dict[str, Any]]:
        return [t.to_definition() for t in self.tools]

    def refresh_instructions(self) -> bool:
        """Regenerate instructions from metadata. Returns True if they changed."""
        updated = self._instructions_builder(self.metadata)
        changed = updated != self.instructions
        self.instructions = updated
        return changed

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, tools={[t.name for t in self.tools]})"


class AgentRegistry:
    """Fixed agent set with an active-agent pointer."""

    def __init__(self, agents: List[Agent], primary: str, active: Optional[str] = None):
        self._agents: Dict[str, Agent] = {a.name: a for a in agents}
        if primary not in self._agents:
            raise AgentNotFound(primary)
        self.primary_name = primary
        self.active_name = active or primary
        if self.active_name not in self._agents:
            raise AgentNotFound(self.active_name)

    def get(self, name: Optional[str]) -> Optional[Agent]:
        if not name:
            return None
        return self._agents.get(name)

    def require(self, name: str) -> Agent:
        agent = self.get(name)
        if agent is None:
            raise AgentNotFound(name)
        return agent

    @property
    def active(self) -> Agent:
        return self._agents[self.active_name]

    @property
    def primary(self) -> Agent:
        return self._agents[self.primary_name]

    def set_active(self, name: str) -> Agent:
        agent = self.require(name)
        self.active_name = name
        return agent

    def names(self) -> List[str]:
        return list(self._agents)

    def __contains__(self, name: str) -> bool:
        return name in self._agents
