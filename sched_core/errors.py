"""
ERRORS
======

Exception taxonomy for schedCore.

Containment
-----------
::

    Dispatcher       : sees only ExecutionResult, never an exception
    └── Orchestrator : converts everything below into ExecutionResult
        └── AgentLoop: only ModelInvocationError escapes
            └── ToolRegistry.invoke: raises UnknownToolError,
                InvalidToolArguments, ToolExecutionError

TaskInactive and LockContention are normal skips, not failures.
UnauthorizedToolCall is converted to a refusal ToolResult by the registry;
DeliveryFailure is recorded on the log entry of an otherwise successful run.
"""

from typing import Any, Dict, List, Optional


class SchedCoreError(Exception):
    """Base class for all schedCore errors."""


class ConfigurationError(SchedCoreError):
    """Unrecoverable startup problem (missing collaborator, missing API key)."""


# ============================================================================
# TASK ERRORS
# ============================================================================

class TaskNotFound(SchedCoreError):
    def __init__(self, task_id: Any):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskInactive(SchedCoreError):
    def __init__(self, task_id: Any):
        self.task_id = task_id
        super().__init__(f"Task inactive: {task_id}")


class LockContention(SchedCoreError):
    def __init__(self, task_id: Any):
        self.task_id = task_id
        super().__init__(f"Task already running: {task_id}")


# ============================================================================
# TOOL ERRORS
# ============================================================================

class ToolExecutionError(SchedCoreError):
    """A tool could not produce a result. Surfaced to the model as data."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        self.message = message
        super().__init__(f"{tool_name}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "tool": self.tool_name}


class UnknownToolError(ToolExecutionError, LookupError):
    """The requested tool name is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Unknown tool: {tool_name}")


class InvalidToolArguments(ToolExecutionError):
    """Arguments failed validation against the tool's request model."""

    def __init__(self, tool_name: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ())) or 'arguments'}: {e.get('msg', '')}"
            for e in self.errors
        )
        super().__init__(tool_name, f"Invalid arguments: {details or 'malformed call'}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = [
            {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg", "")}
            for e in self.errors
        ]
        return d


class UnauthorizedToolCall(SchedCoreError):
    def __init__(self, tool_name: str, subject: Optional[str]):
        self.tool_name = tool_name
        self.subject = subject
        super().__init__(f"{tool_name}: not authorized for {subject!r}")


# ============================================================================
# COLLABORATOR ERRORS
# ============================================================================

class ModelInvocationError(SchedCoreError):
    """Transport-level failure talking to the model (network, auth, quota)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class DeliveryFailure(SchedCoreError):
    def __init__(self, destination: str, message: str):
        self.destination = destination
        super().__init__(f"Delivery to {destination!r} failed: {message}")
