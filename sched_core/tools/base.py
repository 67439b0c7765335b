"""
TOOL_BASE
=========

Base classes and registry for the tools the model may call during a run.

Each tool declares its schema twice:

- ``definition``: ``ToolDefinition`` shown verbatim to the model
- ``request_model``: pydantic model the registry validates arguments
  against before the tool ever sees them

``ToolRegistry.register`` refuses a tool whose two declarations disagree, so
the catalog advertised to the model always matches what ``invoke`` accepts.

Architecture
------------
::

    BaseTool (abstract)
    ├── definition property  → ToolDefinition (name, description, parameters)
    ├── request_model        → pydantic model (extra="forbid")
    ├── requires_authorization → write tools only
    └── execute(request, context) → ToolResult

    ToolRegistry
    ├── register(tool)
    ├── list()              : ToolDefinition catalog
    ├── get_schemas(format) : OpenAI function-calling or Anthropic tool-use
    └── invoke(name, args, context) → ToolResult

Invocation Rules
----------------
- Unknown name → ``UnknownToolError`` (raised, logged at ERROR)
- Malformed arguments → ``InvalidToolArguments`` (raised)
- Write tool from a non-management origin → ``UnauthorizedToolCall``, caught
  and turned into ``ToolResult`` with ``success=False, error="not authorized"``
  (returned, not raised)
- Tool exception or timeout → ``ToolExecutionError`` (raised)
- Output larger than ``max_output_size`` characters is truncated.

Usage::

    registry = ToolRegistry(permissions=allow_list)
    registry.register(SearchGroupsTool(store))

    result = registry.invoke("search_groups", {"search_term": "ai"}, ToolContext())
"""

import json
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import InvalidToolArguments, ToolExecutionError, UnauthorizedToolCall, UnknownToolError

logger = logging.getLogger(__name__)

NOT_AUTHORIZED = "not authorized"


# ============================================================================
# TOOL DEFINITION STRUCTURES
# ============================================================================

@dataclass
class ToolParameter:
    """Definition of a tool parameter."""
    name: str
    type: str  # "string", "integer", "boolean", "array", "object"
    description: str
    required: bool = True
    enum: Optional[List[str]] = None
    default: Optional[Any] = None
    items: Optional[Dict] = None  # For array types

    def to_schema(self) -> Dict:
        """Convert to JSON Schema format."""
        schema = {
            "type": self.type,
            "description": self.description,
        }
        if self.enum:
            schema["enum"] = self.enum
        if self.default is not None:
            schema["default"] = self.default
        if self.items and self.type == "array":
            schema["items"] = self.items
        return schema


@dataclass(frozen=True)
class ToolDefinition:
    """Complete tool definition for the model. Immutable once built."""
    name: str
    description: str
    parameters: List[ToolParameter] = field(default_factory=list)
    writes: bool = False

    def _parameters_schema(self) -> Dict:
        properties = {}
        required = []
        for param in self.parameters:
            properties[param.name] = param.to_schema()
            if param.required:
                required.append(param.name)
        return {"type": "object", "properties": properties, "required": required}

    def to_schema(self) -> Dict:
        """OpenAI-compatible function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self._parameters_schema(),
            },
        }

    def to_anthropic_schema(self) -> Dict:
        """Anthropic tool-use format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self._parameters_schema(),
        }


@dataclass
class ToolContext:
    """Who is invoking a tool. ``origin_subject`` drives write authorization."""
    origin_subject: Optional[str] = None
    session_id: Optional[str] = None
    task_id: Optional[str] = None
    execution_type: str = "scheduled"


class ToolRequest(BaseModel):
    """Base for typed tool arguments; unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# ============================================================================
# TOOL RESULT
# ============================================================================

@dataclass
class ToolResult:
    """Structured tool outcome. Serialized to the model as a JSON object."""
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **data) -> "ToolResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, **data) -> "ToolResult":
        return cls(success=False, data=data, error=error)

    def to_dict(self) -> Dict:
        result = {"success": self.success, **self.data}
        if self.error:
            result["error"] = self.error
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def __str__(self) -> str:
        if self.success:
            return self.to_json()
        return f"[ERROR] {self.error or 'Unknown error'}"


# ============================================================================
# BASE TOOL CLASS
# ============================================================================

class BaseTool(ABC):
    """
    Base class for all tools.

    Subclasses must implement:
    - definition property: Returns ToolDefinition with schema
    - request_model: pydantic model matching the definition's parameters
    - execute method: Performs the actual work on a validated request
    """

    request_model: Type[ToolRequest] = ToolRequest
    requires_authorization: bool = False

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Return the tool's definition (schema for the model)."""

    @abstractmethod
    def execute(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        """Run the tool on already-validated arguments."""

    @property
    def name(self) -> str:
        return self.definition.name

    def validate(self, arguments: Dict[str, Any]) -> ToolRequest:
        try:
            return self.request_model.model_validate(arguments)
        except ValidationError as e:
            raise InvalidToolArguments(self.name, e.errors()) from e


# ============================================================================
# TOOL REGISTRY
# ============================================================================

class ToolRegistry:
    """
    Registry for managing and invoking tools.

    Handles:
    - Tool registration and catalog consistency
    - Schema generation for the model
    - Argument validation and write authorization
    - Execution with timeout and output size limiting
    """

    DEFAULT_TIMEOUT = 30  # seconds
    MAX_OUTPUT_SIZE = 100000  # characters of serialized JSON

    def __init__(
        self,
        permissions=None,
        default_timeout: float = DEFAULT_TIMEOUT,
        max_output_size: int = MAX_OUTPUT_SIZE,
    ):
        """
        Args:
            permissions: Object with ``is_authorized(subject) -> bool``; None
                means every write tool call is refused
            default_timeout: Seconds before a tool call is abandoned
            max_output_size: Serialized result size limit
        """
        self._tools: Dict[str, BaseTool] = {}
        self.permissions = permissions
        self.default_timeout = default_timeout
        self.max_output_size = max_output_size
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="tool")

    def register(self, tool: BaseTool) -> None:
        definition = tool.definition
        declared = {p.name for p in definition.parameters}
        modeled = set(tool.request_model.model_fields)
        if declared != modeled:
            raise ValueError(
                f"Tool '{definition.name}' schema mismatch: "
                f"declared={sorted(declared)} request_model={sorted(modeled)}"
            )
        if definition.writes != tool.requires_authorization:
            raise ValueError(f"Tool '{definition.name}' write flag disagrees with authorization flag")
        self._tools[definition.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list(self) -> List[ToolDefinition]:
        """The full catalog, in registration order."""
        return [tool.definition for tool in self._tools.values()]

    def list_tools(self) -> List[str]:
        return list(self._tools.keys())

    def get_schemas(self, format: str = "openai") -> List[Dict]:
        """
        Get all tool schemas for the model.

        Args:
            format: "openai" or "anthropic"
        """
        if format == "anthropic":
            return [d.to_anthropic_schema() for d in self.list()]
        return [d.to_schema() for d in self.list()]

    def get_tool_descriptions(self) -> str:
        """Formatted descriptions of all tools for display."""
        lines = []
        for definition in self.list():
            marker = " [write]" if definition.writes else ""
            lines.append(f"- {definition.name}{marker}: {definition.description}")
        return "\n".join(lines)

    def invoke(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]],
        context: Optional[ToolContext] = None,
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """
        Validate, authorize and execute a tool.

        Raises:
            UnknownToolError: name is not registered
            InvalidToolArguments: arguments fail the request model
            ToolExecutionError: the tool raised or timed out
        """
        tool = self._tools.get(name)
        if tool is None:
            logger.error("Unknown tool requested: %r (registered: %s)", name, self.list_tools())
            raise UnknownToolError(name)

        context = context or ToolContext()
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidToolArguments(
                name, [{"loc": (), "msg": f"expected an object, got {type(arguments).__name__}"}]
            )
        request = tool.validate(arguments)

        try:
            self._authorize(tool, context)
        except UnauthorizedToolCall as e:
            logger.warning("Refused %s (session %s)", e, context.session_id)
            return ToolResult.fail(NOT_AUTHORIZED)

        timeout = timeout or self.default_timeout
        future = self._executor.submit(tool.execute, request, context)
        try:
            result = future.result(timeout=timeout)
        except FuturesTimeoutError:
            future.cancel()
            raise ToolExecutionError(name, f"timed out after {timeout} seconds")
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(name, f"{type(e).__name__}: {e}") from e

        return self._limit_output(result)

    def _authorize(self, tool: BaseTool, context: ToolContext) -> None:
        """Raises UnauthorizedToolCall for a write tool from a non-management origin."""
        if tool.requires_authorization and not self._is_authorized(context.origin_subject):
            raise UnauthorizedToolCall(tool.definition.name, context.origin_subject)

    def _is_authorized(self, subject: Optional[str]) -> bool:
        if self.permissions is None:
            return False
        return self.permissions.is_authorized(subject)

    def _limit_output(self, result: ToolResult) -> ToolResult:
        serialized = result.to_json()
        if len(serialized) <= self.max_output_size:
            return result
        return ToolResult(
            success=result.success,
            data={
                "truncated": True,
                "original_size": len(serialized),
                "preview": serialized[:self.max_output_size],
            },
            error=result.error,
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
