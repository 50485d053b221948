"""
Display-Mode Synchronizer.

Derives the UI display mode and per-mode payloads from tool results and
transfer events, and pushes them through a UiSink. Two modes are time-boxed
and revert to chat unless something else was shown in the meantime.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import structlog

from schemas.results import DisplayMode, FunctionCallResult
from orchestrator.timers import ContinuationScheduler, CoordinatorTimings

logger = structlog.get_logger()

# Display mode -> result field carrying its payload
PAYLOAD_FIELDS: Dict[DisplayMode, str] = {
    DisplayMode.PROPERTY_LIST: "properties",
    DisplayMode.PROPERTY_DETAILS: "property_details",
    DisplayMode.IMAGE_GALLERY: "images_data",
    DisplayMode.LOCATION_MAP: "location_data",
    DisplayMode.BOOKING_CONFIRMATION: "booking_details",
    DisplayMode.BROCHURE_VIEWER: "brochure_data",
}

# Cleared when a hintless result falls back to chat
CHAT_RESET_MODES = (DisplayMode.PROPERTY_LIST, DisplayMode.PROPERTY_DETAILS, DisplayMode.IMAGE_GALLERY)


class UiSink(ABC):
    """Setter interface for whatever renders the session UI."""

    @abstractmethod
    async def set_mode(self, mode: DisplayMode) -> None: ...

    @abstractmethod
    async def set_property_list(self, data: Any) -> None: ...

    @abstractmethod
    async def set_property_details(self, data: Any) -> None: ...

    @abstractmethod
    async def set_image_gallery(self, data: Any) -> None: ...

    @abstractmethod
    async def set_location_map(self, data: Any) -> None: ...

    @abstractmethod
    async def set_booking_details(self, data: Any) -> None: ...

    @abstractmethod
    async def set_brochure(self, data: Any) -> None: ...

    @abstractmethod
    async def set_active_agent(self, agent_name: str, metadata: Dict[str, Any]) -> None: ...

    async def set_payload(self, mode: DisplayMode, data: Any) -> None:
        setter = {
            DisplayMode.PROPERTY_LIST: self.set_property_list,
            DisplayMode.PROPERTY_DETAILS: self.set_property_details,
            DisplayMode.IMAGE_GALLERY: self.set_image_gallery,
            DisplayMode.LOCATION_MAP: self.set_location_map,
            DisplayMode.BOOKING_CONFIRMATION: self.set_booking_details,
            DisplayMode.BROCHURE_VIEWER: self.set_brochure,
        }[mode]
        await setter(data)


class DisplayModeSynchronizer:
    def __init__(
        self,
        session_id: str,
        sink: UiSink,
        scheduler: ContinuationScheduler,
        timings: CoordinatorTimings,
    ):
        self.session_id = session_id
        self.sink = sink
        self.scheduler = scheduler
        self.timings = timings
        self.mode = DisplayMode.CHAT
        self._generation = 0

    def _revert_delay(self, mode: DisplayMode) -> Optional[float]:
        if mode == DisplayMode.VERIFICATION_SUCCESS:
            return self.timings.verification_success_revert
        if mode == DisplayMode.BOOKING_CONFIRMATION:
            return self.timings.booking_confirmation_revert
        return None

    async def set_mode(self, mode: DisplayMode) -> None:
        self._generation += 1
        generation = self._generation
        previous = self.mode
        self.mode = mode
        await self.sink.set_mode(mode)
        if previous != mode:
            logger.info("display_mode_changed", session_id=self.session_id, previous=previous.value, mode=mode.value)

        delay = self._revert_delay(mode)
        if delay is not None:
            async def _revert():
                if self._generation == generation:
                    await self.set_mode(DisplayMode.CHAT)

            self.scheduler.schedule(f"display.revert.{mode.value}", delay, _revert)

    async def apply_result(
        self,
        result: FunctionCallResult,
        internal_tool: bool = False,
        transfer_default: Optional[DisplayMode] = None,
    ) -> DisplayMode:
        """
        Apply one tool result.

        Args:
            result: normalized tool result
            internal_tool: management tools never reset the mode
            transfer_default: destination agent's default mode when the result is a transfer

        Returns:
            The display mode after applying the result.
        """
        hint = result.ui_display_hint
        if hint is not None:
            await self._show(hint, result)
        elif transfer_default is not None:
            if transfer_default != DisplayMode.CHAT:
                await self._show(transfer_default, result)
        elif not internal_tool:
            await self.set_mode(DisplayMode.CHAT)
            for mode in CHAT_RESET_MODES:
                await self.sink.set_payload(mode, None)
        return self.mode

    async def _show(self, mode: DisplayMode, result: FunctionCallResult) -> None:
        for slot, field in PAYLOAD_FIELDS.items():
            if slot == mode:
                value = result.payload(field)
                if value is not None:
                    await self.sink.set_payload(slot, value)
            else:
                await self.sink.set_payload(slot, None)
        await self.set_mode(mode)

    async def reassert_verification_form(self) -> None:
        """Keep the verification form up while the authentication agent talks."""
        if self.mode != DisplayMode.VERIFICATION_FORM:
            logger.debug("verification_form_reasserted", session_id=self.session_id, previous=self.mode.value)
        await self.set_mode(DisplayMode.VERIFICATION_FORM)
