"""
CLI MODULE
==========

Command-line interface for schedCore.

Usage:
    schedcore tasks
    schedcore task-trigger <task_id>
    python -m sched_core start --server
"""

from .main import cli_cron_check, cli_task_create, cli_tasks_list, main

__all__ = [
    "main",
    "cli_cron_check",
    "cli_task_create",
    "cli_tasks_list",
]
