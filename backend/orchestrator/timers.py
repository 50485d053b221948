"""
Named short-timeout continuations.

Every delayed step of the coordinator is scheduled here so it can be observed,
awaited in tests and cancelled when the session closes. Continuations must
re-check session state before acting; the delays are best-effort only.
"""

import asyncio
import os
from typing import Awaitable, Callable, Dict, Optional
from pydantic import BaseModel
import structlog

logger = structlog.get_logger()


def _ms(name: str, default: int) -> float:
    return int(os.getenv(name, str(default))) / 1000.0


class CoordinatorTimings(BaseModel):
    """Delays in seconds."""
    cancel_grace: float = 0.1
    synthetic_turn_delay: float = 0.2
    followup_delay: float = 0.3
    response_create_delay: float = 0.1
    function_call_recheck: float = 0.15
    verification_success_revert: float = 3.0
    booking_confirmation_revert: float = 15.0

    @classmethod
    def from_env(cls) -> "CoordinatorTimings":
        return cls(
            cancel_grace=_ms("CANCEL_GRACE_MS", 100),
            synthetic_turn_delay=_ms("SYNTHETIC_TURN_DELAY_MS", 200),
            followup_delay=_ms("FOLLOWUP_DELAY_MS", 300),
            response_create_delay=_ms("RESPONSE_CREATE_DELAY_MS", 100),
            function_call_recheck=_ms("FUNCTION_CALL_RECHECK_MS", 150),
            verification_success_revert=_ms("VERIFICATION_SUCCESS_REVERT_MS", 3000),
            booking_confirmation_revert=_ms("BOOKING_CONFIRMATION_REVERT_MS", 15000),
        )

    @classmethod
    def immediate(cls) -> "CoordinatorTimings":
        return cls(
            cancel_grace=0, synthetic_turn_delay=0, followup_delay=0,
            response_create_delay=0, function_call_recheck=0,
            verification_success_revert=0, booking_confirmation_revert=0,
        )


class ContinuationScheduler:
    """Schedules named delayed coroutines for one session."""

    def __init__(self, session_id: str, lock: Optional[asyncio.Lock] = None):
        self.session_id = session_id
        # Shared with event dispatch so a continuation never interleaves with a handler
        self.lock = lock
        self._tasks: Dict[asyncio.Task, str] = {}
        self._closed = False

    def schedule(
        self,
        name: str,
        delay: float,
        action: Callable[[], Awaitable[None]],
    ) -> Optional[asyncio.Task]:
        if self._closed:
            logger.debug("continuation_rejected_closed", session_id=self.session_id, name=name)
            return None

        async def _run():
            await asyncio.sleep(delay)
            try:
                if self.lock is None:
                    await action()
                else:
                    async with self.lock:
                        await action()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "continuation_failed",
                    session_id=self.session_id,
                    name=name,
                    error=str(e),
                )

        task = asyncio.get_running_loop().create_task(_run(), name=name)
        self._tasks[task] = name
        task.add_done_callback(self._forget)
        logger.debug("continuation_scheduled", session_id=self.session_id, name=name, delay=delay)
        return task

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)

    def pending(self, prefix: str = "") -> list[str]:
        return [name for name in self._tasks.values() if name.startswith(prefix)]

    def cancel(self, prefix: str) -> int:
        cancelled = 0
        for task, name in list(self._tasks.items()):
            if name.startswith(prefix) and not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    async def drain(self, prefix: str = "") -> None:
        """Await pending continuations, including ones scheduled while draining."""
        while True:
            tasks = [t for t, name in self._tasks.items() if name.startswith(prefix) and not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def close(self) -> None:
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
