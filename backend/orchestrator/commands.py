"""
Outbound command channel.

All commands leave a session through a CommandChannel, which owns the
ResponseGate and remembers the ids of synthetic user turns so the dispatcher
can tell them apart from real user input.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Set
import structlog

from schemas.events import (
    ClientCommand,
    assistant_message_command,
    function_output_command,
    new_item_id,
    session_update_command,
    user_message_command,
)
from orchestrator.lifecycle import ResponseGate, ResponseLifecycleTracker

logger = structlog.get_logger()


class CommandSink(ABC):
    """Transport for outbound commands (WebRTC relay, Redis stream, realtime socket)."""

    @abstractmethod
    async def send(self, command: ClientCommand) -> None:
        ...


class CommandChannel:
    def __init__(self, session_id: str, sink: CommandSink, tracker: ResponseLifecycleTracker):
        self.session_id = session_id
        self.sink = sink
        self.gate = ResponseGate(tracker, self._send)
        self.synthetic_item_ids: Set[str] = set()

    async def _send(self, command: ClientCommand) -> None:
        await self.sink.send(command)

    async def send_user_turn(self, text: str, synthetic: bool = True) -> str:
        item_id = new_item_id()
        if synthetic:
            self.synthetic_item_ids.add(item_id)
        await self._send(user_message_command(text, item_id=item_id))
        logger.info("user_turn_injected", session_id=self.session_id, item_id=item_id, synthetic=synthetic)
        return item_id

    async def send_assistant_message(self, text: str) -> str:
        item_id = new_item_id()
        await self._send(assistant_message_command(text, item_id=item_id))
        return item_id

    async def send_function_output(self, call_id: str, output: Dict[str, Any]) -> None:
        await self._send(function_output_command(call_id, json.dumps(output)))
        logger.debug("function_output_sent", session_id=self.session_id, call_id=call_id)

    async def update_session(self, instructions: str, tools: List[Dict[str, Any]]) -> None:
        await self._send(session_update_command(instructions, tools))

    async def request_response(self, reason: str) -> bool:
        return await self.gate.request(reason)

    async def cancel_response(self) -> bool:
        return await self.gate.cancel()

    def is_synthetic(self, item_id: str | None) -> bool:
        return item_id is not None and item_id in self.synthetic_item_ids
