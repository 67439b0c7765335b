"""
TASK_DISPATCHER
===============

Polling loop that finds due tasks and hands them to the orchestrator.

Architecture
------------
A single daemon thread (``_run_loop``) wakes every ``poll_interval`` seconds
(the first tick is delayed by ``first_tick_delay`` so collaborators can
finish starting). Each tick:

1. Lists active tasks from the repository.
2. Evaluates ``is_due`` for each task in the configured timezone.
3. For each due task, takes the task lock and submits
   ``orchestrator.execute`` to a ``ThreadPoolExecutor``, passing the
   matching minute as the slot to record on success. The tick never
   waits for a run.
4. Schedules the lock release ``lock_timeout`` seconds later, whether or not
   the run has finished. If it has not, that is logged at ERROR.

A failure while handling one task is logged and the scan continues with the
next task. The dispatcher keeps no per-execution state beyond locks and the
futures of in-flight runs.

Usage::

    dispatcher = TaskDispatcher(repository, orchestrator, poll_interval=30)
    dispatcher.start()
    ...
    dispatcher.stop()
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from ..errors import ConfigurationError, LockContention
from ..models import ExecutionResult
from .locks import ExecutionLock, ExecutionLockRegistry
from .trigger import DEFAULT_IDEMPOTENCY_WINDOW, IDEMPOTENCY_MODES, is_due

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_POLL_INTERVAL_S = 30.0
DEFAULT_FIRST_TICK_DELAY_S = 5.0
DEFAULT_MAX_WORKERS = 4


class TaskDispatcher:
    """Periodic due-task scan with per-task locking and async execution."""

    def __init__(
        self,
        repository,
        orchestrator,
        locks: Optional[ExecutionLockRegistry] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        first_tick_delay: float = DEFAULT_FIRST_TICK_DELAY_S,
        lock_timeout: Optional[float] = None,
        idempotency_window: float = DEFAULT_IDEMPOTENCY_WINDOW.total_seconds(),
        idempotency_mode: str = "interval",
        max_workers: int = DEFAULT_MAX_WORKERS,
        timezone_name: str = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            repository: TaskRepository to scan
            orchestrator: ExecutionOrchestrator that runs a task id
            locks: Shared lock registry (created from ``lock_timeout`` if None)
            poll_interval: Seconds between ticks
            first_tick_delay: Seconds before the first tick
            lock_timeout: Seconds a dispatched run holds its lock
            idempotency_window: Minimum seconds between runs (interval mode)
            idempotency_mode: "interval" or "minute"
            max_workers: Concurrent task executions
            timezone_name: IANA zone triggers are evaluated in
            clock: Returns the current aware datetime (tests)
        """
        if repository is None or orchestrator is None:
            raise ConfigurationError("TaskDispatcher requires a repository and an orchestrator")
        if idempotency_mode not in IDEMPOTENCY_MODES:
            raise ConfigurationError(f"Unknown idempotency mode: {idempotency_mode!r}")
        if poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")

        self.repository = repository
        self.orchestrator = orchestrator
        if locks is None:
            locks = ExecutionLockRegistry(lock_timeout) if lock_timeout else ExecutionLockRegistry()
        self.locks = locks
        self.lock_timeout = lock_timeout or locks.timeout_seconds
        self.poll_interval = poll_interval
        self.first_tick_delay = first_tick_delay
        self.idempotency_window = timedelta(seconds=idempotency_window)
        self.idempotency_mode = idempotency_mode
        self.max_workers = max_workers
        try:
            self.tz = ZoneInfo(timezone_name)
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone: {timezone_name!r}") from e
        self._clock = clock or (lambda: datetime.now(self.tz))

        self._pool: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._in_flight: Dict[str, Future] = {}
        self._release_timers: Dict[str, threading.Timer] = {}

        self._started_at: Optional[datetime] = None
        self._last_tick_at: Optional[datetime] = None
        self._tick_count = 0
        self._dispatched_count = 0

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        """Start polling in a daemon thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._ensure_pool()
        self._started_at = datetime.now(timezone.utc)
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="task-dispatcher")
        self._thread.start()
        logger.info(
            "TaskDispatcher started (poll=%ss, lock_timeout=%ss, idempotency=%s, tz=%s)",
            self.poll_interval, self.lock_timeout, self.idempotency_mode, self.tz.key,
        )

    def stop(self, wait: bool = True) -> None:
        """Stop polling. In-flight runs finish when ``wait`` is True."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

        with self._state_lock:
            timers = list(self._release_timers.items())
            self._release_timers.clear()
        for task_id, timer in timers:
            timer.cancel()

        if self._pool:
            self._pool.shutdown(wait=wait, cancel_futures=True)
            self._pool = None

        for task_id, _ in timers:
            self.locks.release(task_id)
        logger.info("TaskDispatcher stopped")

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="task-exec")
        return self._pool

    def _run_loop(self) -> None:
        if self._stop_event.wait(self.first_tick_delay):
            return
        while not self._stop_event.is_set():
            try:
                self.poll_once()
                self.locks.sweep()
            except Exception as e:
                logger.error("Dispatcher tick failed: %s", e, exc_info=True)
            self._stop_event.wait(self.poll_interval)

    # ========================================================================
    # POLLING
    # ========================================================================

    def now(self) -> datetime:
        current = self._clock()
        if current.tzinfo is None:
            current = current.replace(tzinfo=self.tz)
        return current.astimezone(self.tz)

    def poll_once(self, now: Optional[datetime] = None) -> List[str]:
        """Run one scan. Returns the ids of the tasks dispatched."""
        now = now.astimezone(self.tz) if now else self.now()
        with self._state_lock:
            self._last_tick_at = now
            self._tick_count += 1

        try:
            tasks = self.repository.list_active_tasks()
        except Exception as e:
            logger.error("Could not list active tasks: %s", e, exc_info=True)
            return []

        dispatched = []
        for task in tasks:
            acquired: Optional[ExecutionLock] = None
            try:
                last = task.last_execution.astimezone(self.tz) if task.last_execution else None
                if not is_due(task.trigger, last, now, self.idempotency_window, self.idempotency_mode):
                    logger.debug("Task %s not due (trigger=%s, last=%s)", task.id, task.trigger, last)
                    continue

                if not self.locks.try_acquire(task.id):
                    logger.debug("Task %s already running, skipping", task.id)
                    continue
                acquired = self.locks.get(task.id)

                # Stamped as the last execution on success
                slot = now.replace(second=0, microsecond=0).astimezone(timezone.utc)
                future = self._ensure_pool().submit(self._run_task, task.id, slot)
                with self._state_lock:
                    self._in_flight[str(task.id)] = future
                    self._dispatched_count += 1
                self._schedule_release(str(task.id), acquired, future)

                dispatched.append(task.id)
                logger.info("Dispatched task %s (%s) at %s", task.id, task.name, now.strftime("%Y-%m-%d %H:%M"))
            except Exception as e:
                logger.error("Failed to dispatch task %s: %s", getattr(task, "id", "?"), e, exc_info=True)
                if acquired is not None:
                    self.locks.release(task.id, acquired)
        return dispatched

    def _run_task(self, task_id: str, scheduled_at: Optional[datetime] = None) -> Optional[ExecutionResult]:
        try:
            result = self.orchestrator.execute(task_id, execution_type="scheduled", scheduled_at=scheduled_at)
        except Exception as e:
            logger.error("Orchestrator raised for task %s: %s", task_id, e, exc_info=True)
            return None
        if result.skipped:
            logger.info("Task %s skipped: %s", task_id, result.error)
        elif result.success:
            logger.info("Task %s finished in %dms", task_id, result.duration_ms)
        else:
            logger.warning("Task %s failed: %s", task_id, result.error)
        return result

    # ========================================================================
    # LOCK RELEASE
    # ========================================================================

    def _schedule_release(self, task_id: str, lock: Optional[ExecutionLock], future: Future) -> None:
        timer = threading.Timer(self.lock_timeout, self._release_after_timeout, args=(task_id, lock, future))
        timer.daemon = True
        timer.name = f"lock-release-{task_id}"
        with self._state_lock:
            previous = self._release_timers.pop(task_id, None)
            self._release_timers[task_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _release_after_timeout(self, task_id: str, lock: Optional[ExecutionLock], future: Future) -> None:
        if not future.done():
            logger.error(
                "Task %s still running after lock timeout of %ss; releasing its lock, "
                "a later run may overlap with it",
                task_id, self.lock_timeout,
            )
        self.locks.release(task_id, lock)
        with self._state_lock:
            if self._release_timers.get(task_id) is threading.current_thread():
                del self._release_timers[task_id]
            if future.done() and self._in_flight.get(task_id) is future:
                del self._in_flight[task_id]

    # ========================================================================
    # MANUAL EXECUTION & STATUS
    # ========================================================================

    def trigger_task(self, task_id: str) -> ExecutionResult:
        """
        Run a task now, synchronously, ignoring its trigger.

        Takes the task lock like a scheduled run and releases it as soon as
        the run ends. If the lock is held, returns a skipped result.
        """
        task_id = str(task_id)
        if not self.locks.try_acquire(task_id):
            error = LockContention(task_id)
            logger.info("Manual trigger skipped: %s", error)
            return ExecutionResult(
                success=False, session_id="", duration_ms=0, task_id=task_id,
                error=str(error), error_type="LockContention", skipped=True,
            )
        lock = self.locks.get(task_id)
        try:
            return self.orchestrator.execute(task_id, execution_type="manual")
        finally:
            self.locks.release(task_id, lock)

    def _in_flight_ids(self) -> List[str]:
        with self._state_lock:
            done = [tid for tid, f in self._in_flight.items() if f.done()]
            for tid in done:
                del self._in_flight[tid]
            return list(self._in_flight)

    def get_status(self) -> Dict:
        in_flight = self._in_flight_ids()
        with self._state_lock:
            return {
                "running": self.running,
                "poll_interval_seconds": self.poll_interval,
                "lock_timeout_seconds": self.lock_timeout,
                "idempotency_mode": self.idempotency_mode,
                "timezone": self.tz.key,
                "started_at": self._started_at.isoformat() if self._started_at else None,
                "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
                "tick_count": self._tick_count,
                "dispatched_count": self._dispatched_count,
                "active_locks": self.locks.active_locks(),
                "in_flight": in_flight,
            }
