"""
Server-side bridge to the OpenAI Realtime API.
Feeds every backend event into a ConversationSession and sends its commands
back over the same connection.
"""

import asyncio
import os
from typing import Any, List, Optional

from openai import AsyncOpenAI
import structlog

from schemas.events import ClientCommand
from schemas.session import SessionStatus
from orchestrator.commands import CommandSink
from orchestrator.session import ConversationSession

logger = structlog.get_logger()

REALTIME_MODEL = os.getenv("REALTIME_MODEL", "gpt-4o-realtime-preview")


class RealtimeCommandSink(CommandSink):
    """Sends commands over a realtime connection, buffering until one is attached."""

    def __init__(self):
        self._connection: Optional[Any] = None
        self._pending: List[ClientCommand] = []

    async def attach(self, connection: Any) -> None:
        self._connection = connection
        pending, self._pending = self._pending, []
        for command in pending:
            await connection.send(command.to_wire())

    def detach(self) -> None:
        self._connection = None

    async def send(self, command: ClientCommand) -> None:
        if self._connection is None:
            self._pending.append(command)
            return
        await self._connection.send(command.to_wire())


async def run_realtime_session(
    session: ConversationSession,
    sink: RealtimeCommandSink,
    lock: asyncio.Lock,
    client: Optional[AsyncOpenAI] = None,
    model: str = REALTIME_MODEL,
) -> None:
    """Pump realtime events into the session until the connection closes."""
    client = client or AsyncOpenAI()
    session.state.status = SessionStatus.CONNECTING
    logger.info("realtime_bridge_connecting", session_id=session.session_id, model=model)
    try:
        async with client.beta.realtime.connect(model=model) as connection:
            await sink.attach(connection)
            await session.configure_backend()
            async for event in connection:
                async with lock:
                    await session.handle_event(event.model_dump(exclude_none=True))
    except asyncio.CancelledError:
        logger.info("realtime_bridge_cancelled", session_id=session.session_id)
        raise
    except Exception as e:
        logger.error("realtime_bridge_failed", session_id=session.session_id, error=str(e))
    finally:
        sink.detach()
        session.state.status = SessionStatus.DISCONNECTED
        logger.info("realtime_bridge_closed", session_id=session.session_id)
