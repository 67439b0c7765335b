"""
CLI_MAIN
========

Command-line interface for schedCore.

Commands:
    start               Start the dispatcher (and optionally the API server)
    status              Show configuration and task overview
    tasks               List scheduled tasks
    task-get            Get task details
    task-create         Create a new task
    task-update         Update task fields
    task-enable         Enable a task
    task-disable        Disable a task
    task-delete         Delete a task
    task-trigger        Run a task now
    task-runs           Execution history for a task
    stats               Execution statistics
    cron-check          Validate a trigger and preview its next runs

Usage:
    schedcore start --server --port 8432
    schedcore tasks
    schedcore task-create "AI digest" --trigger "0 16 * * *" --subjects "AI Group" --destination Ops
    schedcore task-trigger 1
    schedcore cron-check "*/15 9-17 * * mon-fri" --count 3
"""

import argparse
import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from .. import __version__
from ..config.loader import get_config_manager
from ..errors import ConfigurationError
from ..logging_config import setup_logging
from ..scheduler.trigger import InvalidTrigger, describe_trigger, is_valid_trigger, next_runs, parse_schedule

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8432

_storage = None
_runtime = None


def get_storage():
    """Storage from the configured backend (no model client needed)."""
    global _storage
    if _storage is None:
        if _runtime is not None:
            _storage = _runtime.storage
        else:
            from ..runtime import build_storage
            manager = get_config_manager()
            _storage = build_storage(manager.config, manager.data_dir)
    return _storage


def get_runtime():
    """The full runtime; requires the model API key."""
    global _runtime
    if _runtime is None:
        from ..runtime import build_runtime
        manager = get_config_manager()
        _runtime = build_runtime(manager.config, manager.data_dir, storage=_storage)
    return _runtime


def _scheduler_now() -> datetime:
    """Now in the configured scheduler timezone, where triggers are evaluated."""
    name = get_config_manager().config.scheduler.timezone
    try:
        return datetime.now(ZoneInfo(name))
    except (KeyError, ValueError):
        logger.warning("Unknown scheduler timezone %r, showing run times in UTC", name)
        return datetime.now(timezone.utc)


def _split_subjects(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [s.strip() for s in value.split(",") if s.strip()]


# ============================================================================
# CLI COMMANDS
# ============================================================================

def cli_tasks_list(active_only: bool = False) -> list:
    """List tasks as dicts, with a readable trigger."""
    tasks = get_storage().repository.list_tasks(active_only=active_only)
    result = []
    for task in tasks:
        data = task.to_dict()
        data["trigger_description"] = describe_trigger(task.trigger)
        result.append(data)
    return result


def cli_task_get(task_id: str) -> dict:
    task = get_storage().repository.get_task(task_id)
    if task is None:
        return {"error": f"Task not found: {task_id}"}
    data = task.to_dict()
    data["trigger_description"] = describe_trigger(task.trigger)
    if task.active and is_valid_trigger(task.trigger):
        data["next_run"] = next_runs(task.trigger, _scheduler_now(), 1)[0].isoformat()
    return data


def cli_task_create(
    name: str,
    trigger: str,
    subjects: Optional[List[str]] = None,
    destination: Optional[str] = None,
    instruction: Optional[str] = None,
    action_type: str = "daily_summary",
    description: str = "",
    active: bool = True,
) -> dict:
    """Create a new task."""
    fields = {
        "name": name,
        "trigger": trigger,
        "subjects": subjects or [],
        "destination": destination,
        "instruction": instruction,
        "action_type": action_type,
        "description": description,
        "active": active,
        "created_by": "cli",
    }
    try:
        task = get_storage().repository.create_task(fields)
    except ValueError as e:
        return {"error": str(e)}
    return {"success": True, "task_id": task.id, "trigger": describe_trigger(task.trigger)}


def cli_task_update(task_id: str, fields: Dict) -> dict:
    fields = {k: v for k, v in fields.items() if v is not None}
    if not fields:
        return {"error": "Nothing to update"}
    try:
        task = get_storage().repository.update_task(task_id, fields)
    except KeyError:
        return {"error": f"Task not found: {task_id}"}
    except ValueError as e:
        return {"error": str(e)}
    return {"success": True, "task": task.to_dict()}


def cli_task_set_active(task_id: str, active: bool) -> dict:
    result = cli_task_update(task_id, {"active": active})
    if "error" in result:
        return result
    return {"success": True, "message": f"Task {task_id} {'enabled' if active else 'disabled'}"}


def cli_task_delete(task_id: str) -> dict:
    if get_storage().repository.delete_task(task_id):
        return {"success": True, "message": f"Task {task_id} deleted"}
    return {"error": f"Task not found: {task_id}"}


def cli_task_trigger(task_id: str) -> dict:
    """Run a task now, synchronously."""
    try:
        runtime = get_runtime()
    except ConfigurationError as e:
        return {"error": str(e)}
    return runtime.dispatcher.trigger_task(task_id).to_dict()


def cli_task_runs(task_id: str, limit: int = 10) -> list:
    return get_storage().repository.get_execution_logs(task_id, limit=limit)


def cli_stats(days: int = 30) -> dict:
    return get_storage().repository.get_execution_stats(days=days)


def cli_cron_check(expression: str, count: int = 5) -> dict:
    """Validate a trigger or readable schedule and list its next ``count`` run times."""
    try:
        expression = parse_schedule(expression)
    except InvalidTrigger:
        return {"expression": expression, "valid": False, "error": "Invalid trigger expression"}
    upcoming = next_runs(expression, _scheduler_now(), count=count)
    return {
        "expression": expression,
        "valid": True,
        "description": describe_trigger(expression),
        "next_runs": [d.isoformat() for d in upcoming],
    }


def cli_status() -> dict:
    manager = get_config_manager()
    config = manager.config
    tasks = get_storage().repository.list_tasks()
    return {
        "version": __version__,
        "config_path": str(manager.config_path),
        "data_dir": str(manager.data_dir),
        "storage": config.storage.type,
        "delivery": config.delivery.type,
        "llm": {
            "provider": config.llm.provider,
            "model": config.llm.model,
            "api_key_set": bool(os.environ.get(config.llm.api_key_env)),
        },
        "scheduler": config.scheduler.to_dict(),
        "tasks": {"total": len(tasks), "active": sum(1 for t in tasks if t.active)},
    }


# ============================================================================
# START
# ============================================================================

def cli_start(server: bool = False, host: str = "127.0.0.1", port: int = DEFAULT_PORT) -> int:
    """
    Run the dispatcher until interrupted; with ``server`` also serve the API.

    Returns the process exit code: 1 if the runtime cannot be built.
    """
    try:
        runtime = get_runtime()
    except ConfigurationError as e:
        print(f"Error: {e}")
        return 1

    if server:
        import uvicorn

        from ..api.app import create_app

        print(f"\nschedCore API Server  v{__version__}")
        print("=" * 50)
        print(f"API Docs:    http://{host}:{port}/docs")
        print(f"Poll every:  {runtime.config.scheduler.poll_interval_seconds}s")
        print("\nPress Ctrl+C to stop\n")

        class StatusPollFilter(logging.Filter):
            """Drop status polling from the access log."""
            def filter(self, record):
                message = record.getMessage()
                return not ("GET" in message and ("/status" in message or "/health" in message))

        logging.getLogger("uvicorn.access").addFilter(StatusPollFilter())
        uvicorn.run(create_app(runtime), host=host, port=port, log_level="info")
        return 0

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    runtime.start()
    print("schedCore dispatcher running. Press Ctrl+C to stop.")
    try:
        while not stop.wait(1):
            pass
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        runtime.stop()
    return 0


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def _print_result(result: dict) -> None:
    if "error" in result:
        print(f"Error: {result['error']}")
    elif "message" in result:
        print(result["message"])
    else:
        print(json.dumps(result, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schedcore",
        description="schedCore - scheduled task execution with a tool-using model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES
========
  %(prog)s start --server --port 8432
  %(prog)s task-create "AI digest" --trigger "0 16 * * *" --subjects "AI Group" --destination Ops
  %(prog)s task-update 1 --trigger "30 22 * * *"
  %(prog)s task-trigger 1
  %(prog)s task-runs 1 --limit 5
  %(prog)s cron-check "0 9 * * mon-fri"

For command-specific help:
  %(prog)s <command> --help
        """,
    )
    parser.add_argument("--version", "-V", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", title="commands", metavar="<command>")

    start_parser = subparsers.add_parser("start", help="Start the dispatcher")
    start_parser.add_argument("--server", action="store_true", help="Also serve the admin API")
    start_parser.add_argument("--host", default="127.0.0.1", help="API host (default: 127.0.0.1)")
    start_parser.add_argument("--port", type=int, default=DEFAULT_PORT,
                              help=f"API port (default: {DEFAULT_PORT})")

    subparsers.add_parser("status", help="Show configuration and task overview")

    tasks_parser = subparsers.add_parser("tasks", help="List scheduled tasks")
    tasks_parser.add_argument("--active", action="store_true", help="Only active tasks")

    task_get_parser = subparsers.add_parser("task-get", help="Get task details")
    task_get_parser.add_argument("task_id", help="Task ID")

    create_parser = subparsers.add_parser("task-create", help="Create a new task")
    create_parser.add_argument("name", help="Task name")
    create_parser.add_argument("--trigger", "-t", required=True, help="5-field cron expression")
    create_parser.add_argument("--subjects", "-s", help="Comma-separated group names")
    create_parser.add_argument("--destination", "-d", help="Group that receives the output")
    create_parser.add_argument("--instruction", "-i", help="Literal instruction (overrides --action-type)")
    create_parser.add_argument("--action-type", "-a", default="daily_summary",
                               help="Instruction template (default: daily_summary)")
    create_parser.add_argument("--description", default="", help="Free-text description")
    create_parser.add_argument("--inactive", action="store_true", help="Create disabled")

    update_parser = subparsers.add_parser("task-update", help="Update task fields")
    update_parser.add_argument("task_id", help="Task ID")
    update_parser.add_argument("--name")
    update_parser.add_argument("--trigger", "-t")
    update_parser.add_argument("--subjects", "-s", help="Comma-separated group names")
    update_parser.add_argument("--destination", "-d")
    update_parser.add_argument("--instruction", "-i")
    update_parser.add_argument("--action-type", "-a")
    update_parser.add_argument("--description")

    for name, help_text in (
        ("task-enable", "Enable a task"),
        ("task-disable", "Disable a task"),
        ("task-delete", "Delete a task"),
        ("task-trigger", "Run a task now"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("task_id", help="Task ID")

    runs_parser = subparsers.add_parser("task-runs", help="Execution history for a task")
    runs_parser.add_argument("task_id", help="Task ID")
    runs_parser.add_argument("--limit", "-l", type=int, default=10, help="Max runs to show")

    stats_parser = subparsers.add_parser("stats", help="Execution statistics")
    stats_parser.add_argument("--days", type=int, default=30, help="Window in days")

    cron_parser = subparsers.add_parser("cron-check", help="Validate a trigger expression")
    cron_parser.add_argument("expression", help="5-field cron expression (quote it)")
    cron_parser.add_argument("--count", "-c", type=int, default=5, help="Next runs to show")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config_manager = get_config_manager()
    setup_logging(
        level=config_manager.config.logging.level,
        log_file=config_manager.config.logging.file,
        data_dir=config_manager.data_dir,
    )

    result = None
    if args.command == "start":
        return cli_start(server=args.server, host=args.host, port=args.port)

    elif args.command == "status":
        result = cli_status()

    elif args.command == "tasks":
        tasks = cli_tasks_list(active_only=args.active)
        if not tasks:
            print("No scheduled tasks.")
            return 0
        print("\nScheduled Tasks:")
        for task in tasks:
            status = "+" if task["active"] else "-"
            last = (task.get("last_execution") or "never")[:19]
            print(f"  [{status}] {task['id']}: {task['name']}")
            print(f"      {task['trigger_description']} ({task['trigger']})")
            print(f"      Subjects: {', '.join(task['subjects']) or '-'}  ->  {task['destination'] or '-'}")
            print(f"      Last run: {last}")
        return 0

    elif args.command == "task-get":
        result = cli_task_get(args.task_id)

    elif args.command == "task-create":
        result = cli_task_create(
            name=args.name,
            trigger=args.trigger,
            subjects=_split_subjects(args.subjects),
            destination=args.destination,
            instruction=args.instruction,
            action_type=args.action_type,
            description=args.description,
            active=not args.inactive,
        )
        if "error" not in result:
            print(f"Created task {result['task_id']}: {result['trigger']}")
            return 0

    elif args.command == "task-update":
        result = cli_task_update(args.task_id, {
            "name": args.name,
            "trigger": args.trigger,
            "subjects": _split_subjects(args.subjects),
            "destination": args.destination,
            "instruction": args.instruction,
            "action_type": args.action_type,
            "description": args.description,
        })

    elif args.command == "task-enable":
        result = cli_task_set_active(args.task_id, True)

    elif args.command == "task-disable":
        result = cli_task_set_active(args.task_id, False)

    elif args.command == "task-delete":
        result = cli_task_delete(args.task_id)

    elif args.command == "task-trigger":
        result = cli_task_trigger(args.task_id)
        if "session_id" in result:
            status = "skipped" if result.get("skipped") else ("ok" if result.get("success") else "failed")
            print(f"Task {args.task_id}: {status} ({result.get('duration_ms', 0)}ms)")
            if result.get("error"):
                print(f"Error: {result['error']}")
            if result.get("output"):
                print(f"\n--- Output ---\n{result['output'][:2000]}")
            return 0 if result.get("success") or result.get("skipped") else 1

    elif args.command == "task-runs":
        runs = cli_task_runs(args.task_id, args.limit)
        if not runs:
            print(f"No runs found for task: {args.task_id}")
            return 0
        print(f"\nRun history for {args.task_id}:")
        for run in runs:
            status = "ok" if run.get("success") else ("running" if not run.get("ended_at") else "failed")
            started = (run.get("started_at") or "")[:19]
            print(f"  [{status}] {started} ({run.get('total_ms') or 0}ms) {run.get('execution_type', '')}")
            if run.get("error"):
                print(f"      {run['error']}")
        return 0

    elif args.command == "stats":
        result = cli_stats(args.days)

    elif args.command == "cron-check":
        result = cli_cron_check(args.expression, args.count)
        if result["valid"]:
            print(f"{result['expression']}: {result['description']}")
            for run in result["next_runs"]:
                print(f"  {run}")
            return 0

    _print_result(result)
    return 1 if "error" in result else 0


if __name__ == "__main__":
    raise SystemExit(main())
