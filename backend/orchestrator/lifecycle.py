"""
Response lifecycle tracking.

The backend allows exactly one outstanding response per session. The tracker
records whether one is in flight, and the ResponseGate makes sure outbound
response-create commands respect that: extra requests are coalesced into one
deferred request that is issued on the next transition to idle.
"""

from enum import Enum
from typing import Awaitable, Callable, Dict, Optional
import structlog

from schemas.events import ClientCommand, response_cancel_command, response_create_command

logger = structlog.get_logger()

# Owners are remembered for recent responses only
MAX_TRACKED_OWNERS = 64


class ResponseState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    ACTIVE = "active"
    CANCELLING = "cancelling"


class ResponseLifecycleTracker:
    """Tracks the single in-flight backend response for a session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.state = ResponseState.IDLE
        self.response_id: Optional[str] = None
        self._owners: Dict[str, str] = {}

    def is_active(self) -> bool:
        return self.state != ResponseState.IDLE

    def mark_requested(self) -> None:
        """A response-create was sent and not yet acknowledged."""
        self.state = ResponseState.REQUESTED
        self.response_id = None

    def mark_active(self, response_id: Optional[str] = None, owner: Optional[str] = None) -> None:
        self.state = ResponseState.ACTIVE
        self.response_id = response_id
        if response_id and owner:
            self._owners[response_id] = owner
            while len(self._owners) > MAX_TRACKED_OWNERS:
                self._owners.pop(next(iter(self._owners)))
        logger.debug(
            "response_marked_active",
            session_id=self.session_id,
            response_id=response_id,
            owner=owner,
        )

    def mark_cancelling(self) -> None:
        if self.state != ResponseState.IDLE:
            self.state = ResponseState.CANCELLING

    def mark_idle(self, reason: str, response_id: Optional[str] = None) -> bool:
        """
        Move to idle.

        When a response id is given it must belong to the current response;
        a late completion of an older response never idles a newer one.

        Returns:
            True if the tracker transitioned to idle.
        """
        if self.state == ResponseState.IDLE:
            return False
        if response_id is not None and self.response_id is not None and response_id != self.response_id:
            logger.debug(
                "response_idle_ignored_stale",
                session_id=self.session_id,
                response_id=response_id,
                current=self.response_id,
            )
            return False
        if response_id is not None and self.state == ResponseState.REQUESTED:
            # Completion of a response we never saw created; ours is still pending
            return False
        self.state = ResponseState.IDLE
        self.response_id = None
        logger.debug("response_marked_idle", session_id=self.session_id, reason=reason)
        return True

    def owner_of(self, response_id: Optional[str]) -> Optional[str]:
        if response_id is None:
            return None
        return self._owners.get(response_id)


class ResponseGate:
    """Issues response-create and response-cancel commands against the tracker."""

    def __init__(
        self,
        tracker: ResponseLifecycleTracker,
        send: Callable[[ClientCommand], Awaitable[None]],
    ):
        self.tracker = tracker
        self._send = send
        self.deferred = False

    async def request(self, reason: str) -> bool:
        """
        Ask the backend for a response.

        Returns:
            True if the command was sent now, False if it was deferred.
        """
        if self.tracker.is_active():
            self.deferred = True
            logger.debug(
                "response_create_deferred",
                session_id=self.tracker.session_id,
                reason=reason,
                state=self.tracker.state.value,
            )
            return False
        self.deferred = False
        self.tracker.mark_requested()
        await self._send(response_create_command())
        logger.debug("response_create_sent", session_id=self.tracker.session_id, reason=reason)
        return True

    async def flush(self) -> bool:
        """Send the deferred request if the tracker is idle."""
        if self.deferred and not self.tracker.is_active():
            return await self.request("deferred")
        return False

    def rearm(self) -> None:
        """A sent request was rejected; retry on the next idle."""
        self.deferred = True

    async def cancel(self) -> bool:
        if not self.tracker.is_active():
            return False
        self.tracker.mark_cancelling()
        await self._send(response_cancel_command())
        logger.info("response_cancel_sent", session_id=self.tracker.session_id)
        return True
