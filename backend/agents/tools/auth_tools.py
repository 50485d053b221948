"""
Phone verification tools for the authentication agent.
"""

import re
from typing import Annotated, Any, Dict

import httpx
from pydantic import BaseModel, Field
import structlog

from agents.tooling import AUTHENTICATION_AGENT, REAL_ESTATE_AGENT, backend_context, tool
from schemas.results import DisplayMode, FlowContext, FunctionCallResult
from services.backend_client import get_backend_client

logger = structlog.get_logger()

E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")
OTP_RE = re.compile(r"^\d{6}$")


class PhoneArgs(BaseModel):
    name: Annotated[str, Field(description="The user's full name")]
    phone_number: Annotated[str, Field(description="Phone number with country code, e.g. +919876543210")]


class OtpArgs(BaseModel):
    otp: Annotated[str, Field(description="The 6-digit code the user received")]


def normalize_phone_number(raw: str) -> str:
    """Strip formatting and ensure a leading '+'."""
    digits = re.sub(r"[\s\-().]", "", raw or "")
    if digits and not digits.startswith("+"):
        digits = f"+{digits}"
    return digits


@tool(args_model=PhoneArgs)
async def submit_phone_number(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Send a verification code to the user's phone."""
    name = (args.get("name") or "").strip()
    phone_number = normalize_phone_number(str(args.get("phone_number") or ""))
    if not name:
        return FunctionCallResult.from_error("Name is required.", ui_display_hint=DisplayMode.VERIFICATION_FORM)
    if not E164_RE.match(phone_number):
        return FunctionCallResult.from_error(
            "Please provide a valid phone number with country code.",
            ui_display_hint=DisplayMode.VERIFICATION_FORM,
        )

    try:
        data = await get_backend_client().send_otp(phone_number, name, **backend_context(args))
    except httpx.HTTPError as e:
        logger.warning("otp_send_failed", error=str(e))
        return FunctionCallResult.from_error(
            f"Could not send the verification code: {e}", ui_display_hint=DisplayMode.VERIFICATION_FORM,
        )
    if data.get("success") is False:
        return FunctionCallResult.from_error(
            data.get("error") or "Could not send the verification code.",
            ui_display_hint=DisplayMode.VERIFICATION_FORM,
        )

    agent.metadata.set("customer_name", name)
    agent.metadata.set("phone_number", phone_number)
    logger.info("otp_sent", agent=agent.name)
    return FunctionCallResult(
        success=True,
        otp_sent=True,
        message=f"A verification code was sent to {phone_number}.",
        ui_display_hint=DisplayMode.VERIFICATION_FORM,
    )


@tool(args_model=OtpArgs)
async def verify_otp(args: Dict[str, Any], agent, transcript) -> FunctionCallResult:
    """Check the verification code and return the user to the property assistant."""
    otp = str(args.get("otp") or "").strip()
    phone_number = args.get("phone_number")
    if not OTP_RE.match(otp):
        return FunctionCallResult.from_error("The code must be 6 digits.", ui_display_hint=DisplayMode.VERIFICATION_FORM)
    if not phone_number:
        return FunctionCallResult.from_error(
            "No phone number on file. Submit the phone number first.", ui_display_hint=DisplayMode.VERIFICATION_FORM,
        )

    try:
        data = await get_backend_client().verify_otp(phone_number, otp, **backend_context(args))
    except httpx.HTTPError as e:
        logger.warning("otp_verify_failed", error=str(e))
        return FunctionCallResult.from_error(
            f"Could not verify the code: {e}", ui_display_hint=DisplayMode.VERIFICATION_FORM,
        )

    if not (data.get("verified") or data.get("success")):
        return FunctionCallResult(
            verified=False,
            error=data.get("error") or "Invalid verification code. Please try again.",
            ui_display_hint=DisplayMode.VERIFICATION_FORM,
        )

    metadata = agent.metadata
    metadata.is_verified = True
    extra: Dict[str, Any] = {}
    if metadata.came_from == "scheduling":
        flow_context = FlowContext.FROM_SCHEDULING_VERIFICATION
    elif metadata.has_flow_context(FlowContext.FROM_QUESTION_AUTH) and metadata.pending_question:
        flow_context = FlowContext.FROM_QUESTION_AUTH
        extra["pending_question"] = metadata.pending_question
    else:
        flow_context = FlowContext.FROM_DIRECT_AUTH

    logger.info("otp_verified", agent=agent.name, flow_context=flow_context.value)
    return FunctionCallResult(
        verified=True,
        is_verified=True,
        destination_agent=REAL_ESTATE_AGENT,
        silent_transfer=True,
        came_from=AUTHENTICATION_AGENT,
        flow_context=flow_context,
        customer_name=args.get("customer_name"),
        phone_number=phone_number,
        message="Verification successful! You're now verified.",
        ui_display_hint=DisplayMode.VERIFICATION_SUCCESS,
        **extra,
    )
