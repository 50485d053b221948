"""
Orchestration error taxonomy.

Tool-level errors are raised inside the executor and converted into
FunctionCallResult(error=...) so the backend always receives a function output.
Session-level errors surface as system transcript lines. The two benign races
only adjust lifecycle flags.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""

    def error_message(self) -> str:
        return str(self)


class ArgumentParseError(OrchestrationError):
    def __init__(self, function_name: str, detail: str):
        super().__init__(f"Invalid arguments for function {function_name}: {detail}")
        self.function_name = function_name


class AgentNotFound(OrchestrationError):
    def __init__(self, agent_name: Optional[str], context: str = "transfer"):
        if context == "configuration":
            message = f"Agent {agent_name} configuration not found."
        else:
            message = f"Agent {agent_name} not found."
        super().__init__(message)
        self.agent_name = agent_name


class ToolNotFound(OrchestrationError):
    def __init__(self, function_name: str, agent_name: str):
        super().__init__(f"Function {function_name} is not available for agent {agent_name}.")
        self.function_name = function_name
        self.agent_name = agent_name


class ToolExecutionError(OrchestrationError):
    def __init__(self, function_name: str, cause: BaseException):
        super().__init__(f"Failed to process function call {function_name}: {cause}")
        self.function_name = function_name
        self.cause = cause


class BackendProtocolError(OrchestrationError):
    """Session-level error reported by the backend."""

    def __init__(self, code: Optional[str], message: str, fatal: bool = False, session_level: bool = False):
        self.code = code
        self.message = message
        self.fatal = fatal
        self.session_level = session_level
        super().__init__(self.transcript_line())

    def transcript_line(self) -> str:
        if self.session_level:
            return f"Session Error: {self.message}"
        return f"Server Error ({self.code or 'unknown'}): {self.message}"


class DuplicateActiveResponse(OrchestrationError):
    """Backend rejected a response-create because one is already in flight."""


class CancelWithNoActiveResponse(OrchestrationError):
    """Backend rejected a cancel because the response had already finished."""
