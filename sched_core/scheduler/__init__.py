"""
Scheduling for schedCore.

Decides when tasks run and makes sure a task never overlaps with itself.

Usage:
    from sched_core.scheduler import TaskDispatcher, ExecutionLockRegistry, is_due

    dispatcher = TaskDispatcher(repository, orchestrator, poll_interval=30)
    dispatcher.start()
"""

from .dispatcher import TaskDispatcher
from .locks import ExecutionLock, ExecutionLockRegistry
from .trigger import (
    CronTrigger,
    InvalidTrigger,
    describe_trigger,
    is_due,
    is_valid_trigger,
    next_run,
    next_runs,
    parse_schedule,
)

__all__ = [
    "TaskDispatcher",
    "ExecutionLock",
    "ExecutionLockRegistry",
    "CronTrigger",
    "InvalidTrigger",
    "describe_trigger",
    "is_due",
    "is_valid_trigger",
    "next_run",
    "next_runs",
    "parse_schedule",
]
