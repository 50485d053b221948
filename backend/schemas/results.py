"""
Function-call contract models.
FunctionCallRequest comes from a completed backend response; FunctionCallResult is
the normalized output of a tool and threads through executor, transfer and display.
"""

from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class DisplayMode(str, Enum):
    CHAT = "chat"
    PROPERTY_LIST = "property-list"
    PROPERTY_DETAILS = "property-details"
    IMAGE_GALLERY = "image-gallery"
    LOCATION_MAP = "location-map"
    SCHEDULING_FORM = "scheduling-form"
    VERIFICATION_FORM = "verification-form"
    VERIFICATION_SUCCESS = "verification-success"
    BOOKING_CONFIRMATION = "booking-confirmation"
    BROCHURE_VIEWER = "brochure-viewer"


class FlowContext(str, Enum):
    NONE = "none"
    FROM_FULL_SCHEDULING = "from_full_scheduling"
    FROM_DIRECT_AUTH = "from_direct_auth"
    FROM_SCHEDULING_VERIFICATION = "from_scheduling_verification"
    FROM_QUESTION_AUTH = "from_question_auth"


# Fields that steer a transfer and never become durable agent state
TRANSFER_CONTROL_FIELDS = ("destination_agent", "silent_transfer", "success", "error")
RESULT_ONLY_FIELDS = ("message", "ui_display_hint", "silent", "continuation")


class FunctionCallRequest(BaseModel):
    """A function call emitted inside a completed backend response."""
    name: str
    call_id: Optional[str] = None
    arguments: str = Field(default="{}", description="Raw JSON argument string")

    @classmethod
    def from_output_item(cls, item: Dict[str, Any]) -> "FunctionCallRequest":
        return cls(
            name=item.get("name", ""),
            call_id=item.get("call_id"),
            arguments=item.get("arguments") or "{}",
        )


class Continuation(BaseModel):
    """Instruction to run another tool and use its result instead."""
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None


class FunctionCallResult(BaseModel):
    """
    Normalized tool output.

    Unknown keys are kept as domain fields (properties, booking_details, ...).
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    message: Optional[str] = None
    error: Optional[str] = None
    success: Optional[bool] = None
    ui_display_hint: Optional[DisplayMode] = None

    destination_agent: Optional[str] = None
    silent_transfer: Optional[bool] = Field(default=None, alias="silentTransfer")
    silent: Optional[bool] = None
    came_from: Optional[str] = None
    flow_context: Optional[FlowContext] = None
    pending_question: Optional[str] = None

    verified: Optional[bool] = None
    is_verified: Optional[bool] = None

    continuation: Optional[Continuation] = None

    @classmethod
    def from_error(cls, error: str, ui_display_hint: Optional[DisplayMode] = None) -> "FunctionCallResult":
        return cls(error=error, ui_display_hint=ui_display_hint)

    @property
    def requests_transfer(self) -> bool:
        """True when the result names a destination and did not veto itself."""
        return bool(self.destination_agent) and self.success is not False

    @property
    def reports_verification(self) -> bool:
        return self.verified is True or self.is_verified is True

    def payload(self, field: str) -> Any:
        """Read a domain field kept as an extra."""
        return (self.model_extra or {}).get(field)

    def to_output(self) -> Dict[str, Any]:
        """Serialize for a function_call_output item."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"continuation"})

    def metadata_fields(self) -> Dict[str, Any]:
        """Fields that may be carried into an agent's metadata on transfer."""
        excluded = set(TRANSFER_CONTROL_FIELDS) | set(RESULT_ONLY_FIELDS)
        return self.model_dump(exclude_none=True, exclude=excluded)
