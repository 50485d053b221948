"""
Redis Streams fan-out for session output.
Outbound backend commands and UI updates are appended to a per-session stream
and replayed to SSE clients, with Last-Event-ID resume.
"""

import asyncio
import os
import re
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Optional
import redis.asyncio as redis
from redis.asyncio.client import Redis
from redis.exceptions import RedisError
import structlog

from schemas.events import ClientCommand, StreamEvent, StreamEventKind, heartbeat_event
from schemas.results import DisplayMode
from orchestrator.commands import CommandSink
from orchestrator.display import UiSink

logger = structlog.get_logger()

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", "0"))

STREAM_PREFIX = "rt:session:"
MAX_STREAM_LEN = 5000
STREAM_TTL_SECONDS = int(os.getenv("SESSION_STREAM_TTL_SECONDS", "86400"))
HEARTBEAT_INTERVAL = 15
STREAM_ID_RE = re.compile(r"^\d+-\d+$")


class SessionStream:
    """Per-session Redis stream of StreamEvents."""

    def __init__(self, redis_client: Redis):
        self.redis = redis_client
        self._sequences: Dict[str, int] = {}

    @classmethod
    async def create(cls) -> "SessionStream":
        client = redis.Redis(
            host=REDIS_HOST,
            port=REDIS_PORT,
            password=REDIS_PASSWORD,
            db=REDIS_DB,
            decode_responses=True,
        )
        await client.ping()
        logger.info("session_stream_connected", host=REDIS_HOST, port=REDIS_PORT)
        return cls(client)

    def _key(self, session_id: str) -> str:
        return f"{STREAM_PREFIX}{session_id}"

    async def publish(self, event: StreamEvent) -> str:
        if event.sequence == 0:
            self._sequences[event.session_id] = self._sequences.get(event.session_id, 0) + 1
            event.sequence = self._sequences[event.session_id]

        key = self._key(event.session_id)
        message_id = await self.redis.xadd(
            key,
            {"data": event.model_dump_json(), "kind": event.kind.value},
            maxlen=MAX_STREAM_LEN,
        )
        await self.redis.expire(key, STREAM_TTL_SECONDS)
        event.stream_id = message_id
        logger.debug(
            "stream_event_published",
            session_id=event.session_id,
            kind=event.kind.value,
            sequence=event.sequence,
        )
        return message_id

    async def subscribe(
        self,
        session_id: str,
        last_event_id: Optional[str] = None,
        include_heartbeats: bool = True,
        max_retries: int = 10,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Yield events for a session until it is closed."""
        key = self._key(session_id)
        start_id = last_event_id if last_event_id and STREAM_ID_RE.match(last_event_id) else "0"
        logger.info("stream_subscribe_started", session_id=session_id, start_id=start_id)

        last_heartbeat = datetime.utcnow()
        heartbeat_sequence = 0
        retry_count = 0

        while True:
            try:
                messages = await self.redis.xread({key: start_id}, count=100, block=5000)
                for _stream, entries in messages or []:
                    for message_id, data in entries:
                        start_id = message_id
                        try:
                            event = StreamEvent.model_validate_json(data.get("data", "{}"))
                        except ValueError as e:
                            logger.error("stream_event_parse_error", session_id=session_id, error=str(e))
                            continue
                        event.stream_id = message_id
                        yield event
                        retry_count = 0
                        if event.kind == StreamEventKind.SESSION_CLOSED:
                            return

                if include_heartbeats:
                    now = datetime.utcnow()
                    if (now - last_heartbeat).total_seconds() >= HEARTBEAT_INTERVAL:
                        heartbeat_sequence += 1
                        yield heartbeat_event(session_id, sequence=heartbeat_sequence)
                        last_heartbeat = now

            except asyncio.CancelledError:
                logger.info("stream_subscription_cancelled", session_id=session_id)
                raise
            except RedisError as e:
                retry_count += 1
                if retry_count >= max_retries:
                    logger.error("stream_subscription_max_retries", session_id=session_id, retries=retry_count)
                    return
                delay = min(2 ** (retry_count - 1), 30)
                logger.error("stream_subscription_error", session_id=session_id, error=str(e), retry_in=delay)
                await asyncio.sleep(delay)

    async def close(self):
        await self.redis.close()


class StreamCommandSink(CommandSink):
    """Relays outbound commands to the browser, which forwards them to the backend."""

    def __init__(self, stream: SessionStream, session_id: str):
        self.stream = stream
        self.session_id = session_id

    async def send(self, command: ClientCommand) -> None:
        await self.stream.publish(StreamEvent(
            session_id=self.session_id,
            kind=StreamEventKind.COMMAND,
            payload=command.to_wire(),
        ))


class StreamUiSink(UiSink):
    """Publishes display state changes for the browser UI."""

    def __init__(self, stream: SessionStream, session_id: str):
        self.stream = stream
        self.session_id = session_id

    async def _publish(self, kind: StreamEventKind, payload: Dict[str, Any]) -> None:
        await self.stream.publish(StreamEvent(session_id=self.session_id, kind=kind, payload=payload))

    async def set_mode(self, mode: DisplayMode) -> None:
        await self._publish(StreamEventKind.UI_MODE, {"mode": mode.value})

    async def _payload(self, slot: str, data: Any) -> None:
        await self._publish(StreamEventKind.UI_PAYLOAD, {"slot": slot, "data": data})

    async def set_property_list(self, data: Any) -> None:
        await self._payload("property_list", data)

    async def set_property_details(self, data: Any) -> None:
        await self._payload("property_details", data)

    async def set_image_gallery(self, data: Any) -> None:
        await self._payload("image_gallery", data)

    async def set_location_map(self, data: Any) -> None:
        await self._payload("location_map", data)

    async def set_booking_details(self, data: Any) -> None:
        await self._payload("booking_details", data)

    async def set_brochure(self, data: Any) -> None:
        await self._payload("brochure", data)

    async def set_active_agent(self, agent_name: str, metadata: Dict[str, Any]) -> None:
        await self._publish(StreamEventKind.UI_AGENT, {"agent": agent_name, "metadata": metadata})


_session_stream: Optional[SessionStream] = None
_session_stream_lock = asyncio.Lock()


async def get_session_stream() -> SessionStream:
    """Get or create the shared SessionStream (async-safe)."""
    global _session_stream
    if _session_stream is not None:
        return _session_stream
    async with _session_stream_lock:
        if _session_stream is None:
            _session_stream = await SessionStream.create()
        return _session_stream


async def close_session_stream():
    global _session_stream
    async with _session_stream_lock:
        if _session_stream is not None:
            await _session_stream.close()
            _session_stream = None
