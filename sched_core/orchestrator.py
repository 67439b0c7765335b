"""
EXECUTION_ORCHESTRATOR
======================

Runs one task end to end and contains every failure at its boundary.

Steps
-----
::

    1. Load the task            → TaskNotFound / TaskInactive
    2. Build the instruction    (literal text, or action-type template)
    3. append_execution_start   (fresh session id)
    4. AgentLoop.run            (deadline from execution_timeout_seconds)
    5. Deliver "**{name}**\\n\\n{text}" to the task's destination
    6. append_execution_end     (success, timing, tokens, tools)
    7. set_last_execution       (only on success; the dispatch slot, or the
                                 time the run started)

``execute`` never raises: callers only ever see an ``ExecutionResult``.
A DeliveryFailure is logged and recorded as the log entry's error, but does
not fail a successful run.
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .delivery import DeliverySink
from .errors import DeliveryFailure, ModelInvocationError, TaskInactive, TaskNotFound
from .loop import AgentLoop, CancellationToken, LoopResult
from .models import DEFAULT_ACTION_TYPE, ExecutionRecord, ExecutionResult, ScheduledTask, utcnow
from .observability import execution_scope
from .tools.base import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Execution cancelled"


# ============================================================================
# INSTRUCTIONS
# ============================================================================

ACTION_TEMPLATES: Dict[str, str] = {
    "daily_summary": (
        "Give me a daily summary of the following groups: {groups}. "
        "Include the most important topics discussed today."
    ),
    "weekly_summary": (
        "Give me a weekly summary of the following groups: {groups}. "
        "What were the main topics this week?"
    ),
    "today_summary": (
        "What happened today in the following groups: {groups}? "
        "Summarize today's activity and discussions."
    ),
    "latest_message": (
        "What are the latest messages in the following groups: {groups}? "
        "Show the newest updates."
    ),
    "group_analytics": (
        "Give me an advanced activity analysis for the groups: {groups}. "
        "Include statistics and trends."
    ),
}


def build_instruction(task: ScheduledTask) -> str:
    """Literal instruction plus the group list, or the action-type template."""
    groups = ", ".join(task.subjects)
    if task.instruction and task.instruction.strip():
        text = task.instruction.strip()
        return f"{text}\n\nGroups to check: {groups}" if groups else text

    template = ACTION_TEMPLATES.get(task.action_type)
    if template is None:
        logger.debug("Unknown action type %r, using %s", task.action_type, DEFAULT_ACTION_TYPE)
        template = ACTION_TEMPLATES[DEFAULT_ACTION_TYPE]
    return template.format(groups=groups or "all groups")


def delivery_text(task: ScheduledTask, text: str) -> str:
    return f"**{task.name}**\n\n{text}"


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class ExecutionOrchestrator:
    """Turns a task id into an agent run, a delivery and an execution log entry."""

    def __init__(
        self,
        repository,
        agent_loop: AgentLoop,
        delivery_sink: DeliverySink,
        tool_registry: Optional[ToolRegistry] = None,
        execution_timeout_seconds: Optional[float] = None,
        clock: Callable = utcnow,
    ):
        """
        Args:
            repository: TaskRepository for tasks and execution logs
            agent_loop: Loop that runs the instruction
            delivery_sink: Where final text is sent
            tool_registry: Catalog shown to the model (None = the loop's registry)
            execution_timeout_seconds: Per-run deadline (None = no deadline)
            clock: Source of "now" for runs without a dispatch slot
        """
        self.repository = repository
        self.agent_loop = agent_loop
        self.delivery_sink = delivery_sink
        self.tool_registry = tool_registry or agent_loop.tool_registry
        self.execution_timeout_seconds = execution_timeout_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._running: Dict[str, Dict] = {}
        self._stats = {
            "total": 0,
            "successful": 0,
            "failed": 0,
            "skipped": 0,
            "total_duration_ms": 0,
        }

    # ========================================================================
    # EXECUTE
    # ========================================================================

    def execute(
        self,
        task_id: str,
        execution_type: str = "scheduled",
        cancel_token: Optional[CancellationToken] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> ExecutionResult:
        """
        Run one task. Never raises.

        ``scheduled_at`` is the trigger slot the dispatcher fired for. A
        successful run records it as the task's last execution, so the
        idempotency window is measured from the slot and not from however
        long the run took. Manual runs pass None and record their start time.
        """
        session_id = str(uuid.uuid4())
        start = time.perf_counter()
        stamp = scheduled_at or self._clock()

        with execution_scope(session_id, task_id):
            try:
                result = self._execute(task_id, session_id, execution_type, cancel_token, start, stamp)
            except TaskNotFound as e:
                logger.warning("[%s] %s", session_id, e)
                result = ExecutionResult(
                    success=False, session_id=session_id, duration_ms=_elapsed_ms(start),
                    task_id=task_id, error=str(e), error_type="TaskNotFound",
                )
            except TaskInactive as e:
                logger.info("[%s] Skipping: %s", session_id, e)
                result = ExecutionResult(
                    success=False, session_id=session_id, duration_ms=_elapsed_ms(start),
                    task_id=task_id, error=str(e), error_type="TaskInactive", skipped=True,
                )
            except Exception as e:
                logger.error("[%s] Execution of task %s failed: %s", session_id, task_id, e, exc_info=True)
                result = ExecutionResult(
                    success=False, session_id=session_id, duration_ms=_elapsed_ms(start),
                    task_id=task_id, error=str(e), error_type=type(e).__name__,
                )

        self._count(result)
        return result

    def _execute(
        self,
        task_id: str,
        session_id: str,
        execution_type: str,
        cancel_token: Optional[CancellationToken],
        start: float,
        stamp: datetime,
    ) -> ExecutionResult:
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        if not task.active:
            raise TaskInactive(task_id)

        record = ExecutionRecord(
            session_id=session_id,
            task_id=task.id,
            instruction=build_instruction(task),
            execution_type=execution_type,
            output_sent_to=task.destination,
            subjects_processed=len(task.subjects),
        )
        log_id = self.repository.append_execution_start(record)
        logger.info(
            "[%s] Executing task %s (%s, %s)", session_id, task.id, task.name, execution_type,
        )

        with self._lock:
            self._running[session_id] = {
                "session_id": session_id,
                "task_id": task.id,
                "task_name": task.name,
                "execution_type": execution_type,
                "started_at": record.started_at.isoformat(),
            }
        try:
            return self._run(task, record, log_id, cancel_token, start, stamp)
        finally:
            with self._lock:
                self._running.pop(session_id, None)

    def _run(
        self,
        task: ScheduledTask,
        record: ExecutionRecord,
        log_id: str,
        cancel_token: Optional[CancellationToken],
        start: float,
        stamp: datetime,
    ) -> ExecutionResult:
        context = ToolContext(
            origin_subject=task.destination,
            session_id=record.session_id,
            task_id=task.id,
            execution_type=record.execution_type,
        )
        token = cancel_token or CancellationToken.with_timeout(self.execution_timeout_seconds)

        try:
            loop_result = self.agent_loop.run(
                record.instruction,
                tool_catalog=self.tool_registry.list(),
                context=context,
                cancel_token=token,
            )
        except Exception as e:
            if isinstance(e, ModelInvocationError):
                logger.error("[%s] Model invocation failed: %s", record.session_id, e)
            else:
                logger.error("[%s] Agent loop raised: %s", record.session_id, e, exc_info=True)
            error = f"{type(e).__name__}: {e}"
            self.repository.append_execution_end(
                log_id, record.finalize(success=False, error=error, total_ms=_elapsed_ms(start)),
            )
            return ExecutionResult(
                success=False, session_id=record.session_id, duration_ms=_elapsed_ms(start),
                task_id=task.id, error=error, error_type=type(e).__name__,
            )

        metrics = _loop_metrics(loop_result)

        if loop_result.status == "cancelled":
            logger.warning(
                "[%s] Task %s cancelled after %d tool round(s)",
                record.session_id, task.id, loop_result.tool_rounds,
            )
            self.repository.append_execution_end(
                log_id,
                record.finalize(success=False, error=CANCELLED_ERROR, total_ms=_elapsed_ms(start), **metrics),
            )
            return ExecutionResult(
                success=False, session_id=record.session_id, duration_ms=_elapsed_ms(start),
                task_id=task.id, output=loop_result.final_response,
                error=CANCELLED_ERROR, error_type="Cancelled",
            )

        message = None
        delivery_error = None
        if task.destination:
            message = delivery_text(task, loop_result.final_response)
            try:
                self._deliver(task.destination, message)
            except DeliveryFailure as e:
                logger.warning("[%s] %s; run still counts as successful", record.session_id, e)
                delivery_error = str(e)
        else:
            logger.warning("[%s] Task %s has no destination; output not delivered", record.session_id, task.id)
        delivered = message is not None and delivery_error is None

        self.repository.append_execution_end(
            log_id,
            record.finalize(
                success=True,
                output_message=message,
                delivered=delivered,
                error=delivery_error,
                total_ms=_elapsed_ms(start),
                **metrics,
            ),
        )
        self.repository.set_last_execution(task.id, stamp)

        logger.info(
            "[%s] Task %s completed: status=%s rounds=%d tokens=%d delivered=%s",
            record.session_id, task.id, loop_result.status, loop_result.tool_rounds,
            loop_result.total_tokens.total, delivered,
        )
        return ExecutionResult(
            success=True, session_id=record.session_id, duration_ms=_elapsed_ms(start),
            task_id=task.id, output=loop_result.final_response, delivered=delivered,
        )

    def _deliver(self, destination: str, text: str) -> None:
        """Raises DeliveryFailure when the sink refuses the message or raises."""
        try:
            sent = self.delivery_sink.send(destination, text)
        except Exception as e:
            logger.error("Delivery sink raised for %r: %s", destination, e, exc_info=True)
            raise DeliveryFailure(destination, f"{type(e).__name__}: {e}") from e
        if not sent:
            raise DeliveryFailure(destination, "sink reported failure")

    # ========================================================================
    # STATUS
    # ========================================================================

    def _count(self, result: ExecutionResult) -> None:
        with self._lock:
            self._stats["total"] += 1
            self._stats["total_duration_ms"] += result.duration_ms
            if result.skipped:
                self._stats["skipped"] += 1
            elif result.success:
                self._stats["successful"] += 1
            else:
                self._stats["failed"] += 1

    def get_running_executions(self) -> List[Dict]:
        with self._lock:
            return [dict(entry) for entry in self._running.values()]

    def get_stats(self) -> Dict:
        with self._lock:
            stats = dict(self._stats)
            running = len(self._running)
        total = stats.pop("total_duration_ms")
        stats["running"] = running
        stats["avg_duration_ms"] = round(total / stats["total"]) if stats["total"] else 0
        return stats

    def is_healthy(self) -> bool:
        return all(
            c is not None
            for c in (self.repository, self.agent_loop, self.delivery_sink, self.tool_registry)
        )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _loop_metrics(result: LoopResult) -> Dict:
    return {
        "final_text": result.final_response,
        "model": result.model,
        "tokens_used": result.total_tokens.total,
        "processing_ms": result.total_duration_ms,
        "tools_used": result.tools_used,
        "rounds": result.tool_rounds,
    }
