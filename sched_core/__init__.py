"""
schedCore - Scheduled Task Execution
====================================

Runs user-defined scheduled tasks through a bounded, tool-using model loop
and delivers the result to a named destination.

Main Components:
- TaskDispatcher: polls for due tasks, locks them, runs them off-thread
- ExecutionOrchestrator: one task end to end, failures contained
- AgentLoop: model ⇄ tools exchange with a round cap
- ToolRegistry: validated, authorization-aware tool invocation

Usage:
    from sched_core.config import get_config_manager
    from sched_core.runtime import build_runtime

    runtime = build_runtime(get_config_manager().config)
    runtime.start()
"""

__version__ = "1.0.0"

from .errors import (
    ConfigurationError,
    ModelInvocationError,
    SchedCoreError,
    TaskInactive,
    TaskNotFound,
    ToolExecutionError,
)
from .loop import AgentLoop, CancellationToken, LoopResult
from .models import ExecutionRecord, ExecutionResult, ScheduledTask
from .orchestrator import ExecutionOrchestrator, build_instruction
from .scheduler import ExecutionLockRegistry, TaskDispatcher, is_due
from .tools import ToolContext, ToolRegistry, ToolResult

__all__ = [
    "__version__",
    "ConfigurationError",
    "ModelInvocationError",
    "SchedCoreError",
    "TaskInactive",
    "TaskNotFound",
    "ToolExecutionError",
    "AgentLoop",
    "CancellationToken",
    "LoopResult",
    "ExecutionRecord",
    "ExecutionResult",
    "ScheduledTask",
    "ExecutionOrchestrator",
    "build_instruction",
    "ExecutionLockRegistry",
    "TaskDispatcher",
    "is_due",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
]
