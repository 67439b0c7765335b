"""Tests for the task repositories and the SQLite message store."""

from datetime import date, datetime, timedelta, timezone

import pytest

from sched_core.models import ExecutionRecord
from sched_core.scheduler.trigger import InvalidTrigger
from sched_core.storage import (
    InMemoryTaskRepository,
    Message,
    SQLiteDatabase,
    SQLiteManagementSource,
    SQLiteMessageStore,
    SQLiteTaskRepository,
)

UTC = timezone.utc


@pytest.fixture
def db(tmp_path):
    database = SQLiteDatabase(str(tmp_path / "schedcore.db"))
    yield database
    database.close()


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, db):
    if request.param == "memory":
        return InMemoryTaskRepository()
    return SQLiteTaskRepository(db)


def _create(repo, **overrides):
    fields = {
        "name": "AI digest",
        "trigger": "0 16 * * *",
        "subjects": ["AI Group"],
        "destination": "Ops",
    }
    fields.update(overrides)
    return repo.create_task(fields)


class TestTaskRepository:

    def test_create_and_get(self, repo):
        task = _create(repo, description="daily")

        loaded = repo.get_task(task.id)
        assert loaded.name == "AI digest"
        assert loaded.trigger == "0 16 * * *"
        assert loaded.subjects == ["AI Group"]
        assert loaded.destination == "Ops"
        assert loaded.action_type == "daily_summary"
        assert loaded.active is True
        assert loaded.last_execution is None
        assert loaded.created_at is not None

    def test_get_missing(self, repo):
        assert repo.get_task("999") is None

    @pytest.mark.parametrize("fields", [
        {"name": "", "trigger": "0 16 * * *"},
        {"name": "x"},
        {"name": "x", "trigger": "0 16 * *"},
        {"name": "x", "trigger": "0 16 * * *", "subjects": "AI Group"},
    ])
    def test_create_rejects_bad_fields(self, repo, fields):
        with pytest.raises(ValueError):
            repo.create_task(fields)

    def test_list_active(self, repo):
        _create(repo, name="on")
        _create(repo, name="off", active=False)

        assert [t.name for t in repo.list_active_tasks()] == ["on"]
        assert {t.name for t in repo.list_tasks()} == {"on", "off"}
        assert [t.name for t in repo.list_tasks(active_only=True)] == ["on"]

    def test_update(self, repo):
        task = _create(repo)

        updated = repo.update_task(task.id, {
            "trigger": "30 22 * * *", "subjects": ["AI Group", "Ops"], "active": False, "id": "ignored",
        })

        assert updated.id == task.id
        assert updated.trigger == "30 22 * * *"
        assert updated.subjects == ["AI Group", "Ops"]
        assert updated.active is False
        assert repo.list_active_tasks() == []

    def test_readable_schedule_is_stored_as_cron(self, repo):
        task = _create(repo, trigger="every weekday at 9:30")
        assert repo.get_task(task.id).trigger == "30 9 * * 1-5"

        repo.update_task(task.id, {"trigger": "every 15 minutes"})
        assert repo.get_task(task.id).trigger == "*/15 * * * *"

    def test_update_rejects_invalid_trigger(self, repo):
        task = _create(repo)
        with pytest.raises(InvalidTrigger):
            repo.update_task(task.id, {"trigger": "every day"})
        assert repo.get_task(task.id).trigger == "0 16 * * *"

    def test_update_missing_task(self, repo):
        with pytest.raises(KeyError):
            repo.update_task("999", {"name": "x"})

    def test_update_without_known_fields(self, repo):
        task = _create(repo)
        with pytest.raises(ValueError):
            repo.update_task(task.id, {"colour": "red"})

    def test_delete(self, repo):
        task = _create(repo)
        assert repo.delete_task(task.id) is True
        assert repo.delete_task(task.id) is False
        assert repo.get_task(task.id) is None

    def test_set_last_execution(self, repo):
        task = _create(repo)
        stamp = datetime(2025, 3, 12, 16, 0, 5, tzinfo=UTC)

        repo.set_last_execution(task.id, stamp)

        assert repo.get_task(task.id).last_execution == stamp


class TestExecutionLog:

    def test_start_then_end(self, repo):
        task = _create(repo)
        record = ExecutionRecord(session_id="s-1", task_id=task.id, instruction="Summarize", execution_type="manual")

        log_id = repo.append_execution_start(record)
        [running] = repo.get_execution_logs(task.id)
        assert running["success"] is False
        assert running.get("ended_at") is None

        repo.append_execution_end(log_id, record.finalize(
            success=True, final_text="All good", tools_used=["search_groups"], rounds=2,
            tokens_used=120, delivered=True, output_sent_to="Ops", total_ms=1500,
        ))

        [entry] = repo.get_execution_logs(task.id)
        assert entry["id"] == log_id
        assert entry["session_id"] == "s-1"
        assert entry["execution_type"] == "manual"
        assert entry["success"] is True
        assert entry["delivered"] is True
        assert entry["tools_used"] == ["search_groups"]
        assert entry["final_text"] == "All good"
        assert entry["total_ms"] == 1500
        assert entry["ended_at"] is not None

    def test_unknown_log_id(self, repo):
        with pytest.raises(KeyError):
            repo.append_execution_end("424242", {"success": True})

    def test_stats(self, repo):
        task = _create(repo)
        for i, ok in enumerate([True, True, False, True]):
            record = ExecutionRecord(session_id=f"s-{i}", task_id=task.id, instruction="x")
            log_id = repo.append_execution_start(record)
            repo.append_execution_end(log_id, record.finalize(
                success=ok, total_ms=100 * (i + 1), tokens_used=10, subjects_processed=1,
            ))

        stats = repo.get_execution_stats(days=7)

        assert stats["total_executions"] == 4
        assert stats["successful_executions"] == 3
        assert stats["failed_executions"] == 1
        assert stats["success_rate"] == 75.0
        assert stats["avg_execution_ms"] == 250
        assert stats["avg_tokens_used"] == 10
        assert stats["total_subjects_processed"] == 4

    def test_record_is_finalized_once(self):
        record = ExecutionRecord(session_id="s", task_id="1", instruction="x")
        record.finalize(success=True)
        with pytest.raises(RuntimeError):
            record.finalize(success=False)


class TestSQLiteMessageStore:

    @pytest.fixture
    def store(self, db):
        store = SQLiteMessageStore(db)
        store.add_group("g1", "AI Group")
        store.add_group("g2", "AI Research")
        store.add_group("g3", "Archive", active=False)
        base = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)
        for i, text in enumerate(["GPU prices", "new model", "gpu shortage"]):
            store.add_message(Message(
                id=f"m{i}", group_id="g1", sender="ana", text=text, timestamp=base + timedelta(hours=i),
            ))
        store.add_message(Message(
            id="y", group_id="g1", sender="bo", text="yesterday", timestamp=base - timedelta(days=1),
        ))
        return store

    def test_search_groups_counts_messages(self, store):
        groups = store.search_groups("ai")
        assert [(g.name, g.message_count) for g in groups] == [("AI Group", 4), ("AI Research", 0)]

    def test_inactive_groups_hidden(self, store):
        assert store.search_groups("archive") == []
        assert store.get_group("g3").active is False

    def test_find_group_by_name(self, store):
        assert store.find_group_by_name("ai group").id == "g1"
        assert store.find_group_by_name("research").id == "g2"
        assert store.find_group_by_name("nothing") is None

    def test_search_messages(self, store):
        found = store.search_messages("g1", query="gpu")
        assert [m.id for m in found] == ["m2", "m0"]

        day = store.search_messages("g1", date_start=date(2025, 3, 11), date_end=date(2025, 3, 11))
        assert [m.id for m in day] == ["y"]

    def test_recent_and_by_date(self, store):
        since = datetime(2025, 3, 12, 10, 30, tzinfo=UTC)
        assert [m.id for m in store.get_recent_messages("g1", since)] == ["m2", "m1"]
        assert [m.id for m in store.get_messages_by_date(date(2025, 3, 12), limit=2)] == ["m2", "m1"]
        assert store.get_messages_by_date(date(2025, 3, 12), group_id="g2") == []

    def test_management_source(self, db):
        source = SQLiteManagementSource(db)
        source.set_subject("Ops")
        source.set_subject("Old Admins", active=False)
        assert source.list_management_subjects() == ["Ops"]
