"""Tests for the polling dispatcher."""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from sched_core.errors import ConfigurationError
from sched_core.models import ExecutionResult
from sched_core.scheduler import ExecutionLockRegistry, TaskDispatcher

from .helpers import NOW, make_task, text_reply


def _ok(task_id="1"):
    return ExecutionResult(success=True, session_id="s-1", duration_ms=5, task_id=task_id)


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.execute.side_effect = lambda task_id, **kwargs: _ok(task_id)
    return mock


@pytest.fixture
def dispatcher(repository, orchestrator):
    d = TaskDispatcher(repository, orchestrator, poll_interval=30, first_tick_delay=0, clock=lambda: NOW)
    yield d
    d.stop()


class TestConstruction:

    def test_requires_collaborators(self, repository, orchestrator):
        with pytest.raises(ConfigurationError):
            TaskDispatcher(None, orchestrator)
        with pytest.raises(ConfigurationError):
            TaskDispatcher(repository, None)

    def test_rejects_bad_settings(self, repository, orchestrator):
        with pytest.raises(ConfigurationError):
            TaskDispatcher(repository, orchestrator, idempotency_mode="weekly")
        with pytest.raises(ConfigurationError):
            TaskDispatcher(repository, orchestrator, poll_interval=0)
        with pytest.raises(ConfigurationError):
            TaskDispatcher(repository, orchestrator, timezone_name="Mars/Olympus_Mons")

    def test_lock_timeout_builds_registry(self, repository, orchestrator):
        d = TaskDispatcher(repository, orchestrator, lock_timeout=45)
        assert d.locks.timeout_seconds == 45
        assert d.lock_timeout == 45


class TestPollOnce:

    def test_dispatches_only_due_tasks(self, repository, orchestrator, dispatcher):
        repository.add(make_task("due", trigger="0 16 * * *"))
        repository.add(make_task("other-time", trigger="0 9 * * *"))
        repository.add(make_task("just-ran", trigger="0 16 * * *", last_execution=NOW - timedelta(minutes=10)))
        repository.add(make_task("ran-yesterday", trigger="0 16 * * *", last_execution=NOW - timedelta(days=1)))
        repository.add(make_task("disabled", trigger="0 16 * * *", active=False))

        dispatched = dispatcher.poll_once(NOW)
        assert wait_until(lambda: orchestrator.execute.call_count == 2)

        assert sorted(dispatched) == ["due", "ran-yesterday"]
        assert sorted(c.args[0] for c in orchestrator.execute.call_args_list) == ["due", "ran-yesterday"]
        orchestrator.execute.assert_any_call(
            "due", execution_type="scheduled", scheduled_at=datetime(2025, 3, 12, 16, 0, tzinfo=timezone.utc),
        )

    def test_hourly_task_fires_every_hour_despite_slow_runs(self, repository, make_orchestrator):
        repository.add(make_task("1", trigger="0 * * * *"))
        # Each run finishes 40s after the tick that dispatched it
        orchestrator, _ = make_orchestrator(
            lambda n, messages: text_reply("ok"), clock=lambda: NOW + timedelta(seconds=40),
        )
        d = TaskDispatcher(repository, orchestrator, lock_timeout=0.1)
        try:
            assert d.poll_once(NOW) == ["1"]
            assert wait_until(
                lambda: repository.get_task("1").last_execution is not None and not d.locks.is_locked("1")
            )
            assert repository.get_task("1").last_execution == datetime(2025, 3, 12, 16, 0, tzinfo=timezone.utc)
            assert d.poll_once(NOW + timedelta(seconds=30)) == []

            assert d.poll_once(NOW + timedelta(hours=1)) == ["1"]
        finally:
            d.stop()

    def test_locked_task_is_skipped(self, repository, orchestrator, dispatcher):
        repository.add(make_task("1"))
        assert dispatcher.locks.try_acquire("1")

        assert dispatcher.poll_once(NOW) == []
        assert orchestrator.execute.call_count == 0

    def test_second_poll_in_same_minute_does_not_redispatch(self, repository, orchestrator, dispatcher):
        repository.add(make_task("1"))

        assert dispatcher.poll_once(NOW) == ["1"]
        assert dispatcher.poll_once(NOW + timedelta(seconds=30)) == []
        assert wait_until(lambda: orchestrator.execute.call_count == 1)

    def test_bad_task_does_not_stop_the_scan(self, repository, orchestrator, dispatcher):
        repository.add(make_task("broken", trigger="not a cron"))
        repository.add(make_task("fine"))

        assert dispatcher.poll_once(NOW) == ["fine"]
        assert not dispatcher.locks.is_locked("broken")

    def test_repository_failure_returns_nothing(self, orchestrator):
        repository = MagicMock()
        repository.list_active_tasks.side_effect = RuntimeError("db locked")
        d = TaskDispatcher(repository, orchestrator)

        assert d.poll_once(NOW) == []
        assert d.get_status()["tick_count"] == 1

    def test_orchestrator_exception_is_contained(self, repository, orchestrator, dispatcher):
        repository.add(make_task("1"))
        orchestrator.execute.side_effect = RuntimeError("unexpected")

        assert dispatcher.poll_once(NOW) == ["1"]
        assert wait_until(lambda: orchestrator.execute.call_count == 1)

    def test_trigger_evaluated_in_configured_timezone(self, repository, orchestrator):
        repository.add(make_task("paris", trigger="0 17 * * *"))
        repository.add(make_task("utc", trigger="0 16 * * *"))
        d = TaskDispatcher(repository, orchestrator, timezone_name="Europe/Paris")
        try:
            # 16:00 UTC is 17:00 in Paris in March (CET)
            assert d.poll_once(datetime(2025, 3, 12, 16, 0, tzinfo=timezone.utc)) == ["paris"]
        finally:
            d.stop()

    def test_minute_mode(self, repository, orchestrator):
        repository.add(make_task("q", trigger="*/15 * * * *", last_execution=NOW - timedelta(minutes=15)))
        d = TaskDispatcher(repository, orchestrator, idempotency_mode="minute")
        try:
            assert d.poll_once(NOW.replace(minute=0)) == ["q"]
        finally:
            d.stop()


class TestLockRelease:

    def test_lock_released_after_timeout_even_if_still_running(self, repository, orchestrator):
        started, finish = threading.Event(), threading.Event()

        def slow(task_id, **kwargs):
            started.set()
            finish.wait(5)
            return _ok(task_id)

        orchestrator.execute.side_effect = slow
        repository.add(make_task("1"))
        d = TaskDispatcher(repository, orchestrator, lock_timeout=0.2)
        try:
            assert d.poll_once(NOW) == ["1"]
            assert started.wait(2)
            assert d.locks.is_locked("1")

            assert wait_until(lambda: not d.locks.is_locked("1"))
            assert d.get_status()["in_flight"] == ["1"]
        finally:
            finish.set()
            d.stop()

    def test_stop_releases_held_locks(self, repository, orchestrator):
        repository.add(make_task("1"))
        d = TaskDispatcher(repository, orchestrator, lock_timeout=60)
        d.poll_once(NOW)
        assert d.locks.is_locked("1")

        d.stop(wait=True)
        assert not d.locks.is_locked("1")


class TestTriggerTask:

    def test_runs_synchronously_and_releases(self, repository, orchestrator, dispatcher):
        result = dispatcher.trigger_task("1")

        assert result.success
        orchestrator.execute.assert_called_once_with("1", execution_type="manual")
        assert not dispatcher.locks.is_locked("1")

    def test_contention_returns_skipped_result(self, orchestrator, dispatcher):
        dispatcher.locks.try_acquire("1")

        result = dispatcher.trigger_task("1")

        assert result.skipped and not result.success
        assert result.error_type == "LockContention"
        orchestrator.execute.assert_not_called()

    def test_lock_released_when_orchestrator_raises(self, orchestrator, dispatcher):
        orchestrator.execute.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            dispatcher.trigger_task("1")
        assert not dispatcher.locks.is_locked("1")


class TestLifecycle:

    def test_background_loop_dispatches(self, repository, orchestrator):
        repository.add(make_task("1"))
        d = TaskDispatcher(
            repository, orchestrator, poll_interval=0.05, first_tick_delay=0, clock=lambda: NOW,
        )
        d.start()
        try:
            assert d.running
            assert wait_until(lambda: orchestrator.execute.call_count >= 1)
            assert wait_until(lambda: d.get_status()["tick_count"] >= 2)
            # The lock keeps later ticks from starting the same task again
            assert [c.args[0] for c in orchestrator.execute.call_args_list] == ["1"]
        finally:
            d.stop()
        assert not d.running

    def test_status(self, repository, orchestrator):
        shared = ExecutionLockRegistry(timeout_seconds=90)
        d = TaskDispatcher(repository, orchestrator, locks=shared, timezone_name="UTC")

        status = d.get_status()

        assert status["running"] is False
        assert status["lock_timeout_seconds"] == 90
        assert status["idempotency_mode"] == "interval"
        assert status["timezone"] == "UTC"
        assert status["started_at"] is None
        assert status["active_locks"] == []
        assert status["in_flight"] == []
