"""
SQLITE_STORAGE
==============

SQLite-backed task repository, message store and management source.

All three share one ``SQLiteDatabase`` (one connection guarded by a lock,
so ``":memory:"`` works and worker threads can share it). Timestamps are
stored as UTC ISO-8601 strings at second precision, which keeps string
comparison equal to time ordering.

Usage::

    db = SQLiteDatabase("./data/schedcore/schedcore.db")
    repository = SQLiteTaskRepository(db)
    messages = SQLiteMessageStore(db)
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..models import ScheduledTask, parse_datetime, utcnow
from .base import (
    UPDATABLE_TASK_FIELDS,
    Group,
    ManagementSource,
    Message,
    MessageStore,
    TaskRepository,
    validate_task_fields,
)
from .memory import summarize_logs

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    action_type TEXT DEFAULT 'daily_summary',
    subjects TEXT DEFAULT '[]',
    trigger_expr TEXT NOT NULL,
    instruction TEXT,
    destination TEXT,
    active INTEGER DEFAULT 1,
    last_execution TEXT,
    created_by TEXT DEFAULT 'system',
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS task_execution_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    session_id TEXT,
    instruction TEXT,
    execution_type TEXT DEFAULT 'scheduled',
    started_at TEXT,
    ended_at TEXT,
    final_text TEXT,
    model TEXT,
    tokens_used INTEGER DEFAULT 0,
    processing_ms INTEGER DEFAULT 0,
    tools_used TEXT,
    rounds INTEGER DEFAULT 0,
    success INTEGER DEFAULT 0,
    error TEXT,
    output_message TEXT,
    output_sent_to TEXT,
    delivered INTEGER DEFAULT 0,
    total_ms INTEGER DEFAULT 0,
    subjects_processed INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_logs_task ON task_execution_logs (task_id, started_at);

CREATE TABLE IF NOT EXISTS chat_groups (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    active INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    group_id TEXT NOT NULL,
    sender TEXT,
    text TEXT,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_group_time ON messages (group_id, timestamp);

CREATE TABLE IF NOT EXISTS management_subjects (
    subject TEXT PRIMARY KEY,
    active INTEGER DEFAULT 1
);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


class SQLiteDatabase:
    """One shared connection plus schema setup."""

    def __init__(self, path: str = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self.transaction() as conn:
            conn.executescript(SCHEMA)
        logger.debug("SQLite database ready at %s", self.path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# ============================================================================
# TASK REPOSITORY
# ============================================================================

_LOG_END_COLUMNS = (
    "ended_at", "final_text", "model", "tokens_used", "processing_ms", "tools_used",
    "rounds", "success", "error", "output_message", "output_sent_to", "delivered",
    "total_ms", "subjects_processed",
)


class SQLiteTaskRepository(TaskRepository):

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=str(row["id"]),
            name=row["name"],
            trigger=row["trigger_expr"],
            subjects=json.loads(row["subjects"] or "[]"),
            destination=row["destination"],
            instruction=row["instruction"],
            action_type=row["action_type"] or "daily_summary",
            active=bool(row["active"]),
            last_execution=parse_datetime(row["last_execution"]),
            description=row["description"] or "",
            created_by=row["created_by"] or "system",
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> Dict:
        entry = dict(row)
        entry["id"] = str(entry["id"])
        entry["tools_used"] = json.loads(entry["tools_used"]) if entry.get("tools_used") else []
        entry["success"] = bool(entry["success"])
        entry["delivered"] = bool(entry["delivered"])
        return entry

    # -- Core operations --

    def list_active_tasks(self) -> List[ScheduledTask]:
        return self.list_tasks(active_only=True)

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def set_last_execution(self, task_id: str, timestamp: datetime) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE scheduled_tasks SET last_execution = ? WHERE id = ?",
                (_ts(timestamp), task_id),
            )

    def append_execution_start(self, record) -> str:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO task_execution_logs
                    (task_id, session_id, instruction, execution_type, started_at, success)
                VALUES (?, ?, ?, ?, ?, 0)
                """,
                (str(record.task_id), record.session_id, record.instruction,
                 record.execution_type, _ts(record.started_at)),
            )
            log_id = str(cursor.lastrowid)
        logger.debug("Started execution log %s for task %s", log_id, record.task_id)
        return log_id

    def append_execution_end(self, log_id: str, fields: Dict) -> None:
        values = []
        for column in _LOG_END_COLUMNS:
            value = fields.get(column)
            if column == "tools_used":
                value = json.dumps(value or [])
            elif column in ("success", "delivered"):
                value = 1 if value else 0
            elif column == "ended_at" and isinstance(value, datetime):
                value = _ts(value)
            values.append(value)
        assignments = ", ".join(f"{c} = ?" for c in _LOG_END_COLUMNS)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE task_execution_logs SET {assignments} WHERE id = ?",
                (*values, log_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Unknown execution log: {log_id}")

    # -- Administrative operations --

    def list_tasks(self, active_only: bool = False) -> List[ScheduledTask]:
        sql = "SELECT * FROM scheduled_tasks"
        if active_only:
            sql += " WHERE active = 1"
        sql += " ORDER BY id"
        with self.db.transaction() as conn:
            rows = conn.execute(sql).fetchall()
        return [self._row_to_task(r) for r in rows]

    def create_task(self, fields: Dict) -> ScheduledTask:
        fields = validate_task_fields(fields, creating=True)
        now = _ts(utcnow())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scheduled_tasks
                    (name, description, action_type, subjects, trigger_expr, instruction,
                     destination, active, created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fields["name"],
                    fields.get("description", ""),
                    fields.get("action_type") or "daily_summary",
                    json.dumps(list(fields.get("subjects") or [])),
                    fields["trigger"],
                    fields.get("instruction"),
                    fields.get("destination"),
                    1 if fields.get("active", True) else 0,
                    fields.get("created_by", "system"),
                    now,
                    now,
                ),
            )
            task_id = str(cursor.lastrowid)
        logger.info("Created scheduled task %s (%s)", task_id, fields["name"])
        return self.get_task(task_id)

    def update_task(self, task_id: str, fields: Dict) -> ScheduledTask:
        updates = {k: v for k, v in fields.items() if k in UPDATABLE_TASK_FIELDS}
        if not updates:
            raise ValueError("No valid fields to update")
        updates = validate_task_fields(updates)

        columns, params = [], []
        for key, value in updates.items():
            column = "trigger_expr" if key == "trigger" else key
            if key == "subjects":
                value = json.dumps(list(value))
            elif key == "active":
                value = 1 if value else 0
            columns.append(f"{column} = ?")
            params.append(value)
        columns.append("updated_at = ?")
        params.append(_ts(utcnow()))

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE scheduled_tasks SET {', '.join(columns)} WHERE id = ?",
                (*params, task_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Task with ID {task_id} not found")
        logger.info("Updated scheduled task %s", task_id)
        return self.get_task(task_id)

    def delete_task(self, task_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted scheduled task %s", task_id)
        return deleted

    def get_execution_logs(self, task_id: str, limit: int = 50) -> List[Dict]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM task_execution_logs
                WHERE task_id = ?
                ORDER BY started_at DESC, id DESC
                LIMIT ?
                """,
                (str(task_id), limit),
            ).fetchall()
        return [self._row_to_log(r) for r in rows]

    def get_execution_stats(self, days: int = 30) -> Dict:
        cutoff = _ts(utcnow() - timedelta(days=days))
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM task_execution_logs WHERE started_at >= ?", (cutoff,)
            ).fetchall()
        return summarize_logs([self._row_to_log(r) for r in rows])


# ============================================================================
# MESSAGE STORE
# ============================================================================

class SQLiteMessageStore(MessageStore):

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def add_group(self, group_id: str, name: str, active: bool = True) -> Group:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO chat_groups (id, name, active) VALUES (?, ?, ?)",
                (group_id, name, 1 if active else 0),
            )
        return Group(id=group_id, name=name, active=active)

    def add_message(self, message: Message) -> Message:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO messages (id, group_id, sender, text, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                (message.id, message.group_id, message.sender, message.text, _ts(message.timestamp)),
            )
        return message

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            group_id=row["group_id"],
            sender=row["sender"] or "",
            text=row["text"] or "",
            timestamp=parse_datetime(row["timestamp"]),
        )

    def search_groups(self, search_term: Optional[str] = None, limit: int = 50) -> List[Group]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT g.id, g.name, g.active, COUNT(m.id) AS message_count
                FROM chat_groups g LEFT JOIN messages m ON m.group_id = g.id
                WHERE g.active = 1 AND LOWER(g.name) LIKE ?
                GROUP BY g.id
                ORDER BY LOWER(g.name)
                LIMIT ?
                """,
                (f"%{(search_term or '').strip().lower()}%", limit),
            ).fetchall()
        return [Group(r["id"], r["name"], bool(r["active"]), r["message_count"]) for r in rows]

    def get_group(self, group_id: str) -> Optional[Group]:
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT g.id, g.name, g.active, COUNT(m.id) AS message_count
                FROM chat_groups g LEFT JOIN messages m ON m.group_id = g.id
                WHERE g.id = ?
                GROUP BY g.id
                """,
                (group_id,),
            ).fetchone()
        return Group(row["id"], row["name"], bool(row["active"]), row["message_count"]) if row else None

    def _query(self, where: List[str], params: List, limit: int) -> List[Message]:
        sql = "SELECT * FROM messages"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY timestamp DESC LIMIT ?"
        with self.db.transaction() as conn:
            rows = conn.execute(sql, (*params, limit)).fetchall()
        return [self._row_to_message(r) for r in rows]

    def search_messages(
        self,
        group_id: str,
        query: Optional[str] = None,
        date_start: Optional[date] = None,
        date_end: Optional[date] = None,
        limit: int = 100,
    ) -> List[Message]:
        where, params = ["group_id = ?"], [group_id]
        if query:
            where.append("LOWER(text) LIKE ?")
            params.append(f"%{query.lower()}%")
        if date_start:
            where.append("substr(timestamp, 1, 10) >= ?")
            params.append(date_start.isoformat())
        if date_end:
            where.append("substr(timestamp, 1, 10) <= ?")
            params.append(date_end.isoformat())
        return self._query(where, params, limit)

    def get_recent_messages(self, group_id: str, since: datetime, limit: int = 50) -> List[Message]:
        return self._query(["group_id = ?", "timestamp >= ?"], [group_id, _ts(since)], limit)

    def get_messages_by_date(
        self, day: date, group_id: Optional[str] = None, limit: int = 100
    ) -> List[Message]:
        where, params = ["substr(timestamp, 1, 10) = ?"], [day.isoformat()]
        if group_id:
            where.append("group_id = ?")
            params.append(group_id)
        return self._query(where, params, limit)


# ============================================================================
# MANAGEMENT SOURCE
# ============================================================================

class SQLiteManagementSource(ManagementSource):

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def set_subject(self, subject: str, active: bool = True) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO management_subjects (subject, active) VALUES (?, ?)",
                (subject, 1 if active else 0),
            )

    def list_management_subjects(self) -> List[str]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT subject FROM management_subjects WHERE active = 1 ORDER BY subject"
            ).fetchall()
        return [r["subject"] for r in rows]
