"""Tests for the command-line interface (memory storage, no model client)."""

import importlib
import json
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from sched_core.config import SchedCoreConfig, StorageConfig
from sched_core.config import loader
from sched_core.errors import ConfigurationError
from sched_core.runtime import build_storage

cli = importlib.import_module("sched_core.cli.main")


@pytest.fixture(autouse=True)
def cli_state(tmp_path, monkeypatch):
    """Point the CLI at a temp data dir with memory storage and quiet logging."""
    monkeypatch.setenv("SCHEDCORE_DATA_DIR", str(tmp_path))
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "config.json").write_text(json.dumps({
        "storage": {"type": "memory"},
        "logging": {"file": "none"},
    }))
    monkeypatch.setattr(loader, "_config_manager", None)
    monkeypatch.setattr("sched_core.logging_config._logging_configured", True)
    monkeypatch.setattr(cli, "_storage", build_storage(SchedCoreConfig(storage=StorageConfig(type="memory"))))
    monkeypatch.setattr(cli, "_runtime", None)


class TestCommands:

    def test_cron_check(self):
        result = cli.cli_cron_check("0 9 * * mon-fri", count=3)
        assert result["valid"] is True
        assert result["description"] == "Every weekday at 09:00"
        assert len(result["next_runs"]) == 3

    def test_cron_check_invalid(self):
        result = cli.cli_cron_check("0 25 * * *")
        assert result == {"expression": "0 25 * * *", "valid": False, "error": "Invalid trigger expression"}

    def test_task_lifecycle(self):
        created = cli.cli_task_create("AI digest", "0 16 * * *", subjects=["AI Group"], destination="Ops")
        assert created == {"success": True, "task_id": "1", "trigger": "Every day at 16:00"}

        [listed] = cli.cli_tasks_list()
        assert listed["name"] == "AI digest"
        assert listed["created_by"] == "cli"

        assert cli.cli_task_set_active("1", False)["message"] == "Task 1 disabled"
        assert cli.cli_tasks_list(active_only=True) == []
        assert "next_run" not in cli.cli_task_get("1")

        updated = cli.cli_task_update("1", {"trigger": "30 22 * * *", "name": None})
        assert updated["task"]["trigger"] == "30 22 * * *"
        assert updated["task"]["name"] == "AI digest"

        assert cli.cli_task_delete("1")["success"] is True
        assert "error" in cli.cli_task_get("1")

    def test_cron_check_accepts_readable_schedule(self):
        result = cli.cli_cron_check("Every weekday at 9:30", count=1)
        assert result["valid"] is True
        assert result["expression"] == "30 9 * * 1-5"
        assert result["description"] == "Every weekday at 09:30"

    def test_create_converts_readable_schedule(self):
        created = cli.cli_task_create("Standup notes", "every day at 16:00")
        assert created["trigger"] == "Every day at 16:00"
        assert cli.cli_task_get(created["task_id"])["trigger"] == "0 16 * * *"

    def test_next_run_uses_scheduler_timezone(self, tmp_path):
        (tmp_path / "config" / "config.json").write_text(json.dumps({
            "storage": {"type": "memory"},
            "logging": {"file": "none"},
            "scheduler": {"timezone": "Europe/Paris"},
        }))
        cli.cli_task_create("Paris digest", "0 17 * * *")

        next_run = datetime.fromisoformat(cli.cli_task_get("1")["next_run"])
        assert next_run.astimezone(ZoneInfo("Europe/Paris")).hour == 17
        assert next_run.astimezone(ZoneInfo("Europe/Paris")).minute == 0

    def test_create_rejects_bad_trigger(self):
        assert "error" in cli.cli_task_create("x", "every morning")

    def test_update_errors(self):
        assert cli.cli_task_update("7", {"name": None}) == {"error": "Nothing to update"}
        assert cli.cli_task_update("7", {"name": "x"}) == {"error": "Task not found: 7"}

    def test_status_reports_config(self):
        status = cli.cli_status()
        assert status["storage"] == "memory"
        assert status["tasks"] == {"total": 0, "active": 0}


class TestMain:

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "schedcore" in capsys.readouterr().out

    def test_cron_check_command(self, capsys):
        assert cli.main(["cron-check", "*/15 * * * *", "--count", "2"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("*/15 * * * *: Every 15 minutes")

    def test_invalid_cron_exits_nonzero(self, capsys):
        assert cli.main(["cron-check", "nope"]) == 1
        assert "Error: Invalid trigger expression" in capsys.readouterr().out

    def test_create_then_list(self, capsys):
        assert cli.main(["task-create", "AI digest", "-t", "0 16 * * *", "-s", "AI Group, Ops", "-d", "Ops"]) == 0
        assert "Created task 1" in capsys.readouterr().out

        assert cli.main(["tasks"]) == 0
        out = capsys.readouterr().out
        assert "[+] 1: AI digest" in out
        assert "Subjects: AI Group, Ops  ->  Ops" in out

    def test_missing_task_exits_nonzero(self, capsys):
        assert cli.main(["task-delete", "42"]) == 1
        assert "Task not found: 42" in capsys.readouterr().out

    def test_start_exits_nonzero_without_runtime(self, monkeypatch, capsys):
        def missing_key():
            raise ConfigurationError("OPENAI_API_KEY is not set")

        monkeypatch.setattr(cli, "get_runtime", missing_key)

        assert cli.main(["start"]) == 1
        assert "Error: OPENAI_API_KEY is not set" in capsys.readouterr().out
