"""Tests for the per-task execution lock registry."""

import threading

import pytest

from sched_core.scheduler.locks import ExecutionLockRegistry


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _race(registry, task_ids):
    """Call try_acquire for each id from its own thread, all released at once."""
    barrier = threading.Barrier(len(task_ids))
    results = [None] * len(task_ids)

    def worker(index, task_id):
        barrier.wait()
        results[index] = registry.try_acquire(task_id)

    threads = [threading.Thread(target=worker, args=(i, t)) for i, t in enumerate(task_ids)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    return results


class TestMutualExclusion:

    def test_concurrent_same_task_exactly_one_wins(self):
        for _ in range(50):
            registry = ExecutionLockRegistry(timeout_seconds=60)
            results = _race(registry, ["7"] * 8)
            assert results.count(True) == 1

    def test_concurrent_different_tasks_all_win(self):
        registry = ExecutionLockRegistry(timeout_seconds=60)
        results = _race(registry, ["1", "2", "3", "4"])
        assert results == [True, True, True, True]

    def test_acquire_after_release(self):
        registry = ExecutionLockRegistry()
        assert registry.try_acquire("1")
        assert not registry.try_acquire("1")
        assert registry.release("1")
        assert registry.try_acquire("1")

    def test_release_without_lock(self):
        registry = ExecutionLockRegistry()
        assert registry.release("nope") is False

    def test_ids_are_compared_as_strings(self):
        registry = ExecutionLockRegistry()
        assert registry.try_acquire(5)
        assert not registry.try_acquire("5")


class TestExpiry:

    def test_unreleased_lock_expires(self):
        clock = FakeClock()
        registry = ExecutionLockRegistry(timeout_seconds=120, clock=clock)
        assert registry.try_acquire("1")

        clock.advance(119)
        assert registry.is_locked("1")
        assert not registry.try_acquire("1")

        clock.advance(1)
        assert not registry.is_locked("1")
        assert registry.get("1") is None
        assert registry.try_acquire("1")

    def test_sweep_removes_expired_only(self):
        clock = FakeClock()
        registry = ExecutionLockRegistry(timeout_seconds=10, clock=clock)
        registry.try_acquire("old")
        clock.advance(5)
        registry.try_acquire("new")
        clock.advance(6)

        assert registry.sweep() == ["old"]
        assert registry.is_locked("new")
        assert len(registry) == 1

    def test_stale_release_keeps_newer_lock(self):
        clock = FakeClock()
        registry = ExecutionLockRegistry(timeout_seconds=10, clock=clock)
        registry.try_acquire("1")
        first = registry.get("1")

        clock.advance(11)
        assert registry.try_acquire("1")
        second = registry.get("1")

        assert registry.release("1", first) is False
        assert registry.is_locked("1")
        assert registry.release("1", second) is True
        assert not registry.is_locked("1")

    def test_active_locks_report(self):
        clock = FakeClock()
        registry = ExecutionLockRegistry(timeout_seconds=30, clock=clock)
        registry.try_acquire("1")
        clock.advance(10)

        [entry] = registry.active_locks()
        assert entry == {"task_id": "1", "held_seconds": 10.0, "expires_in_seconds": 20.0}

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            ExecutionLockRegistry(timeout_seconds=0)
