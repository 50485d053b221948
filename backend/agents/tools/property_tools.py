"""
Property tools for the real estate agent.
Message tracking, project detection and selection, project details and media,
and the hand-off into scheduling.
"""

import re
from typing import Annotated, Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field
import structlog

from agents.tooling import (
    AUTHENTICATION_AGENT,
    SCHEDULE_MEETING_AGENT,
    backend_context,
    tool,
)
from orchestrator.escalation import EscalationConfig
from schemas.results import Continuation, DisplayMode, FlowContext, FunctionCallResult
from services.backend_client import get_backend_client

logger = structlog.get_logger()

ESCALATION_THRESHOLD = EscalationConfig.from_env().threshold
# Verified users who have not booked get a scheduling nudge after this many questions
ASK_TO_SCHEDULE_AFTER = 12

SCHEDULE_BUTTON_RE = re.compile(r"^yes,?\s+i'?d like to schedule a visit for\s+(.+?)[.!]?$", re.IGNORECASE)
SCHEDULING_RETURN_CONTEXTS = (FlowContext.FROM_FULL_SCHEDULING, FlowContext.FROM_SCHEDULING_VERIFICATION)


class MessageArgs(BaseModel):
    message: Annotated[str, Field(description="The user's latest message, verbatim")]


class ProjectArgs(BaseModel):
    project_name: Annotated[
        Optional[str],
        Field(description="Name of the project/property; omit to use the active project"),
    ] = None


class ActiveProjectArgs(BaseModel):
    project_name: Annotated[str, Field(description="Name of the project the user is now discussing")]


def _match_project(name: Optional[str], project_names: List[str]) -> Optional[str]:
    if not name:
        return None
    wanted = name.strip().lower()
    for project in project_names:
        if project.lower() == wanted:
            return project
    return None


def _find_project_in_text(text: str, project_names: List[str]) -> Optional[str]:
    lowered = text.lower()
    # Longest names first so "Palm Heights II" beats "Palm Heights"
    for project in sorted(project_names, key=len, reverse=True):
        if project.lower() in lowered:
            return project
    return None


@tool(args_model=MessageArgs, internal=True)
async def track_user_message(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Record the user's latest message. Call this first for every user message."""
    params = MessageArgs.model_validate(args)
    metadata = agent.metadata

    if metadata.has_flow_context(*SCHEDULING_RETURN_CONTEXTS):
        # Returning from scheduling: finish the booking directly instead of asking the model
        metadata.clear_flow_context()
        logger.info("scheduling_return_shortcut", agent=agent.name)
        return FunctionCallResult(
            success=True,
            continuation=Continuation(tool="complete_scheduling", reason="scheduling_return_shortcut"),
        )

    if metadata.has_flow_context(FlowContext.FROM_DIRECT_AUTH):
        metadata.is_verified = True
        metadata.clear_flow_context()
        return FunctionCallResult(success=True, is_verified=True)

    if metadata.has_flow_context(FlowContext.FROM_QUESTION_AUTH) and metadata.is_verified:
        question = metadata.pending_question
        metadata.clear_flow_context()
        metadata.pending_question = None
        return FunctionCallResult(success=True, answer_pending_question=True, pending_question=question)

    match = SCHEDULE_BUTTON_RE.match(params.message.strip())
    if match:
        property_name = _match_project(match.group(1), metadata.project_names) or match.group(1)
        return FunctionCallResult(
            destination_agent=SCHEDULE_MEETING_AGENT,
            silent_transfer=True,
            came_from=agent.name,
            property_id_to_schedule=metadata.project_id_map.get(property_name) or metadata.active_project_id,
            property_name=property_name,
        )

    if metadata.is_verified and not metadata.has_scheduled and metadata.user_question_count >= ASK_TO_SCHEDULE_AFTER:
        return FunctionCallResult(
            success=True,
            suggest_scheduling=True,
            message="The user has asked several questions. Offer to schedule a site visit.",
        )

    return FunctionCallResult(success=True, message_tracked=True)


@tool(args_model=MessageArgs, internal=True)
async def detect_property_in_message(args: Dict[str, Any], agent, transcript) -> Dict[str, Any]:
    """Detect which known property the user's message refers to."""
    params = MessageArgs.model_validate(args)
    metadata = agent.metadata
    detected = _find_project_in_text(params.message, metadata.project_names)
    if detected is None:
        for text in reversed(transcript.recent_user_texts(3)):
            detected = _find_project_in_text(text, metadata.project_names)
            if detected:
                break
    return {
        "propertyDetected": detected is not None,
        "detectedProperty": detected,
        "shouldUpdateActiveProject": detected is not None and detected != metadata.active_project,
    }


@tool(args_model=ActiveProjectArgs, internal=True)
async def update_active_project(args: Dict[str, Any], agent, transcript) -> Dict[str, Any]:
    """Set the project the conversation is currently about."""
    params = ActiveProjectArgs.model_validate(args)
    metadata = agent.metadata
    project = _match_project(params.project_name, metadata.project_names)
    if project is None:
        return {
            "success": False,
            "error": f"Project {params.project_name} not found. Available projects: {', '.join(metadata.project_names)}",
        }
    metadata.active_project = project
    metadata.active_project_id = metadata.project_id_map.get(project)
    logger.info("active_project_updated", agent=agent.name, project=project)
    return {"success": True, "active_project": project, "active_project_id": metadata.active_project_id}


@tool(args_model=ProjectArgs)
async def get_project_details(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Look up project details. Without a project name, list all projects."""
    params = ProjectArgs.model_validate(args)
    requested = params.project_name
    try:
        data = await get_backend_client().get_project_details(requested, **backend_context(args))
    except httpx.HTTPError as e:
        logger.warning("project_details_failed", project=requested, error=str(e))
        return FunctionCallResult.from_error(f"Could not load project details: {e}")

    properties = data.get("properties") or []
    if requested and len(properties) == 1:
        details = properties[0]
        return FunctionCallResult(
            success=True,
            message=f"Here are the details for {details.get('name', requested)}.",
            ui_display_hint=DisplayMode.PROPERTY_DETAILS,
            property_details=details,
        )
    return FunctionCallResult(
        success=True,
        message=f"Found {len(properties)} properties.",
        ui_display_hint=DisplayMode.PROPERTY_LIST,
        properties=properties,
    )


async def _property_media(args: Dict[str, Any], kind: str, mode: DisplayMode, field: str) -> FunctionCallResult:
    project = args.get("project_name") or args.get("active_project")
    if not project:
        return FunctionCallResult.from_error("No property selected. Ask the user which property they mean.")
    try:
        data = await get_backend_client().get_property_media(kind, project, **backend_context(args))
    except httpx.HTTPError as e:
        logger.warning("property_media_failed", kind=kind, project=project, error=str(e))
        return FunctionCallResult.from_error(f"Could not load {kind} for {project}: {e}")
    return FunctionCallResult(
        success=True,
        message=f"Showing {kind} for {project}.",
        ui_display_hint=mode,
        **{field: {"property_name": project, **data}},
    )


@tool(args_model=ProjectArgs)
async def get_property_images(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Show the photo gallery of a property."""
    return await _property_media(args, "images", DisplayMode.IMAGE_GALLERY, "images_data")


@tool(args_model=ProjectArgs)
async def show_property_location(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Show a property's location on a map."""
    return await _property_media(args, "location", DisplayMode.LOCATION_MAP, "location_data")


@tool(args_model=ProjectArgs)
async def show_property_brochure(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Open the brochure of a property."""
    return await _property_media(args, "brochure", DisplayMode.BROCHURE_VIEWER, "brochure_data")


@tool()
async def initiate_scheduling(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Start booking a site visit for the active property."""
    metadata = agent.metadata
    property_id = metadata.active_project_id or (metadata.project_ids[0] if metadata.project_ids else None)
    property_name = metadata.active_project or "the selected property"

    if not metadata.is_verified and metadata.user_question_count >= ESCALATION_THRESHOLD:
        logger.info("scheduling_requires_verification", agent=agent.name)
        return FunctionCallResult(
            destination_agent=AUTHENTICATION_AGENT,
            silent_transfer=True,
            came_from=agent.name,
            flow_context=FlowContext.FROM_QUESTION_AUTH,
            pending_question=f"I'd like to schedule a visit to {property_name}.",
            ui_display_hint=DisplayMode.VERIFICATION_FORM,
        )

    return FunctionCallResult(
        destination_agent=SCHEDULE_MEETING_AGENT,
        silent_transfer=True,
        came_from=agent.name,
        property_id_to_schedule=property_id,
        property_name=property_name,
    )
