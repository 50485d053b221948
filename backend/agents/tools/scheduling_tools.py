"""
Scheduling tools: available slots, visit booking, booking confirmation and the
scheduling agent's transfer guard.
"""

from typing import Annotated, Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field
import structlog

from agents.tooling import AUTHENTICATION_AGENT, backend_context, tool
from schemas.results import Continuation, DisplayMode, FunctionCallResult
from services.backend_client import get_backend_client

logger = structlog.get_logger()

SCHEDULING_ORIGIN = "scheduling"


class SlotArgs(BaseModel):
    property_id: Annotated[
        Optional[str],
        Field(description="Property to list visit slots for; defaults to the property being scheduled"),
    ] = None


class VisitArgs(BaseModel):
    selected_date: Annotated[str, Field(description="Visit date chosen by the user, e.g. 2026-11-03")]
    selected_time: Annotated[str, Field(description="Visit time chosen by the user, e.g. 11:00 AM")]


class TransferArgs(BaseModel):
    destination_agent: Annotated[str, Field(description="Agent the conversation should move to")]


def _property_fields(args: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "property_id_to_schedule": args.get("property_id_to_schedule") or args.get("active_project_id"),
        "property_name": args.get("property_name") or args.get("active_project"),
    }


@tool(args_model=SlotArgs)
async def get_available_slots(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """List open visit dates and times. Must be called before anything else."""
    params = SlotArgs.model_validate(args)
    fields = _property_fields(args)
    property_id = params.property_id or fields["property_id_to_schedule"]
    try:
        data = await get_backend_client().get_available_slots(property_id, **backend_context(args))
    except httpx.HTTPError as e:
        logger.warning("available_slots_failed", property_id=property_id, error=str(e))
        return FunctionCallResult.from_error(
            f"Could not load available slots: {e}", ui_display_hint=DisplayMode.SCHEDULING_FORM,
        )
    return FunctionCallResult(
        success=True,
        message="Please pick a date and time for your visit.",
        ui_display_hint=DisplayMode.SCHEDULING_FORM,
        slots=data.get("slots", {}),
        **fields,
    )


@tool(args_model=VisitArgs)
async def schedule_visit(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Book the visit at the chosen date and time. Unverified users are sent to verification first."""
    params = VisitArgs.model_validate(args)
    metadata = agent.metadata
    metadata.set("selected_date", params.selected_date)
    metadata.set("selected_time", params.selected_time)

    if not metadata.is_verified:
        return FunctionCallResult(
            destination_agent=AUTHENTICATION_AGENT,
            silent_transfer=True,
            came_from=SCHEDULING_ORIGIN,
            ui_display_hint=DisplayMode.VERIFICATION_FORM,
            selected_date=params.selected_date,
            selected_time=params.selected_time,
            **_property_fields(args),
        )

    return FunctionCallResult(
        success=True,
        continuation=Continuation(
            tool="complete_scheduling",
            arguments={"selected_date": params.selected_date, "selected_time": params.selected_time},
            reason="visit_requested",
        ),
    )


@tool()
async def request_authentication(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Send the user to phone verification before booking."""
    return FunctionCallResult(
        destination_agent=AUTHENTICATION_AGENT,
        silent_transfer=True,
        came_from=SCHEDULING_ORIGIN,
        ui_display_hint=DisplayMode.VERIFICATION_FORM,
        **_property_fields(args),
    )


@tool()
async def complete_scheduling(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Confirm the booked visit to the user."""
    metadata = agent.metadata
    date = args.get("selected_date") or args.get("appointment_date") or "your selected date"
    time = args.get("selected_time") or args.get("appointment_time") or "your selected time"
    customer = args.get("customer_name") or "Valued Customer"
    fields = _property_fields(args)
    property_name = fields["property_name"] or "the selected property"

    if not args.get("booking_confirmed") and args.get("selected_date") and args.get("selected_time"):
        try:
            await get_backend_client().schedule_visit({
                **backend_context(args),
                "property_id": fields["property_id_to_schedule"],
                "customer_name": customer,
                "phone_number": args.get("phone_number"),
                "visit_date": date,
                "visit_time": time,
            })
        except httpx.HTTPError as e:
            logger.warning("schedule_visit_failed", property=property_name, error=str(e))
            return FunctionCallResult.from_error(f"Could not book the visit: {e}")
        metadata.set("booking_confirmed", True)

    metadata.has_scheduled = True
    metadata.is_verified = True
    metadata.clear_flow_context()
    logger.info("visit_scheduled", agent=agent.name, property=property_name, date=date, time=time)

    return FunctionCallResult(
        success=True,
        message=(
            f"Great news, {customer}! Your visit to {property_name} has been scheduled for "
            f"{date} at {time}. You'll receive all details shortly!"
        ),
        ui_display_hint=DisplayMode.BOOKING_CONFIRMATION,
        has_scheduled=True,
        booking_details={
            "customerName": customer,
            "propertyName": property_name,
            "date": date,
            "time": time,
            "phoneNumber": args.get("phone_number"),
        },
    )


@tool(args_model=TransferArgs)
async def transfer_agents(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Move the conversation to another agent."""
    logger.info("scheduling_transfer_vetoed", requested=args.get("destination_agent"))
    return FunctionCallResult(
        success=False,
        destination_agent=args.get("destination_agent"),
        error="get_available_slots must be called first before any transfers",
        ui_display_hint=DisplayMode.SCHEDULING_FORM,
    )
