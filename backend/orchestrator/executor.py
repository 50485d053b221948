"""
Function-Call Executor.

Turns a FunctionCallRequest into a FunctionCallResult: parse arguments, fill in
omitted arguments from the active agent's metadata, run the handler bound on
the *current* active agent and resolve continuations. Every failure becomes a
result with an `error` field; nothing is raised to the dispatcher.
"""

import json
import os
from typing import Any, Dict
import structlog

from schemas.results import FunctionCallRequest, FunctionCallResult
from schemas.session import AgentMetadata
from orchestrator.agent_registry import AgentRegistry
from orchestrator.errors import (
    AgentNotFound,
    ArgumentParseError,
    ToolExecutionError,
    ToolNotFound,
)
from telemetry import get_tracer, traced_span

logger = structlog.get_logger()

MAX_CONTINUATION_DEPTH = int(os.getenv("MAX_CONTINUATION_DEPTH", "2"))


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def parse_arguments(call: FunctionCallRequest) -> Dict[str, Any]:
    """Parse the raw JSON argument string of a call."""
    raw = (call.arguments or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ArgumentParseError(call.name, e.msg) from e
    if not isinstance(parsed, dict):
        raise ArgumentParseError(call.name, "arguments must be a JSON object")
    return parsed


def merge_metadata_into_args(args: Dict[str, Any], metadata: AgentMetadata) -> Dict[str, Any]:
    """
    Fill arguments the caller omitted (or left empty) from stored metadata.
    Caller values win; empty metadata values never replace anything.
    """
    merged = dict(args)
    for key, value in metadata.model_dump(exclude_none=True).items():
        if _is_empty(value):
            continue
        if key not in merged or _is_empty(merged[key]):
            merged[key] = value
    return merged


def normalize_result(raw: Any) -> FunctionCallResult:
    if isinstance(raw, FunctionCallResult):
        return raw
    if raw is None:
        return FunctionCallResult()
    if isinstance(raw, dict):
        return FunctionCallResult.model_validate(raw)
    raise TypeError(f"tool returned {type(raw).__name__}, expected a mapping")


class FunctionCallExecutor:
    """Executes tool calls against the active agent of a session."""

    def __init__(
        self,
        session_id: str,
        registry: AgentRegistry,
        transcript,
        max_depth: int = MAX_CONTINUATION_DEPTH,
    ):
        self.session_id = session_id
        self.registry = registry
        self.transcript = transcript
        self.max_depth = max_depth
        self._tracer = get_tracer()

    async def execute(self, call: FunctionCallRequest) -> FunctionCallResult:
        with traced_span(self._tracer, "function_call.execute"):
            try:
                args = parse_arguments(call)
            except ArgumentParseError as e:
                logger.warning(
                    "function_call_arguments_invalid",
                    session_id=self.session_id,
                    function=call.name,
                    error=e.error_message(),
                )
                return FunctionCallResult.from_error(e.error_message())

            logger.info(
                "function_call_started",
                session_id=self.session_id,
                function=call.name,
                call_id=call.call_id,
                agent=self.registry.active_name,
            )
            return await self.run_tool(call.name, args)

    async def run_tool(self, name: str, args: Dict[str, Any], depth: int = 0) -> FunctionCallResult:
        """Run a tool on the active agent, following at most `max_depth` continuations."""
        agent = self.registry.get(self.registry.active_name)
        if agent is None:
            error = AgentNotFound(self.registry.active_name, context="configuration")
            logger.error("function_call_agent_missing", session_id=self.session_id, agent=self.registry.active_name)
            return FunctionCallResult.from_error(error.error_message())

        handler = agent.handler_for(name)
        if handler is None:
            error = ToolNotFound(name, agent.name)
            logger.warning("function_call_tool_missing", session_id=self.session_id, function=name, agent=agent.name)
            return FunctionCallResult.from_error(error.error_message(), ui_display_hint=agent.default_ui_hint)

        merged = merge_metadata_into_args(args, agent.metadata)
        try:
            result = normalize_result(await handler(merged, agent, self.transcript))
        except Exception as e:
            error = ToolExecutionError(name, e)
            logger.error(
                "function_call_failed",
                session_id=self.session_id,
                function=name,
                agent=agent.name,
                error=str(e),
            )
            return FunctionCallResult.from_error(error.error_message())

        continuation = result.continuation
        if continuation is None:
            return result

        if depth >= self.max_depth:
            logger.warning(
                "function_call_continuation_depth_exceeded",
                session_id=self.session_id,
                function=name,
                next_tool=continuation.tool,
                depth=depth,
            )
            result.continuation = None
            return result

        logger.info(
            "function_call_continuation",
            session_id=self.session_id,
            function=name,
            next_tool=continuation.tool,
            reason=continuation.reason,
        )
        return await self.run_tool(continuation.tool, dict(continuation.arguments), depth + 1)

