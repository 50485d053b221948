"""
Tool declaration helpers shared by all agents.
The @tool decorator binds a handler to the ToolSpec the backend sees.
"""

import inspect
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from pydantic import BaseModel

from orchestrator.agent_registry import ToolHandler, ToolSpec

REAL_ESTATE_AGENT = "real_estate"
SCHEDULE_MEETING_AGENT = "schedule_meeting"
AUTHENTICATION_AGENT = "authentication"

# Chatbot id used when the session carries none or an invalid one
FALLBACK_CHATBOT_ID = "00000000-0000-0000-0000-000000000000"


def tool(
    name: Optional[str] = None,
    args_model: Optional[Type[BaseModel]] = None,
    internal: bool = False,
) -> Callable[[ToolHandler], ToolHandler]:
    """
    Declare an async handler as a backend tool.

    The description is the first paragraph of the handler's docstring; the
    parameter schema comes from `args_model`.
    """

    def decorator(func: ToolHandler) -> ToolHandler:
        doc = inspect.getdoc(func) or ""
        parameters = {"type": "object", "properties": {}}
        if args_model is not None:
            parameters = args_model.model_json_schema()
            parameters.pop("title", None)
        func.tool_spec = ToolSpec(
            name=name or func.__name__,
            description=doc.split("\n\n")[0].replace("\n", " "),
            parameters=parameters,
            internal=internal,
        )
        return func

    return decorator


def bind_tools(*handlers: ToolHandler) -> Tuple[List[ToolSpec], Dict[str, ToolHandler]]:
    specs = [h.tool_spec for h in handlers]
    return specs, {spec.name: h for spec, h in zip(specs, handlers)}


def _valid_uuid(value: Any) -> Optional[str]:
    if not value:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


def backend_context(args: Dict[str, Any]) -> Dict[str, Any]:
    """Identity fields every backend call carries."""
    return {
        "org_id": _valid_uuid(args.get("org_id")),
        "chatbot_id": _valid_uuid(args.get("chatbot_id")) or FALLBACK_CHATBOT_ID,
        "session_id": args.get("session_id"),
    }
