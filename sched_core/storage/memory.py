"""
In-process implementations of the storage interfaces.

Used for ``storage.type = "memory"`` and throughout the test suite.
"""

import itertools
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from ..models import ScheduledTask, utcnow
from .base import (
    UPDATABLE_TASK_FIELDS,
    Group,
    ManagementSource,
    Message,
    MessageStore,
    TaskRepository,
    validate_task_fields,
)


class InMemoryTaskRepository(TaskRepository):

    def __init__(self, tasks: Iterable[ScheduledTask] = ()):
        self._lock = threading.Lock()
        self._tasks: Dict[str, ScheduledTask] = {}
        self._logs: Dict[str, Dict] = {}
        self._ids = itertools.count(1)
        self._log_ids = itertools.count(1)
        for task in tasks:
            self._tasks[task.id] = task

    def add(self, task: ScheduledTask) -> ScheduledTask:
        with self._lock:
            self._tasks[task.id] = task
        return task

    # -- Core operations --

    def list_active_tasks(self) -> List[ScheduledTask]:
        with self._lock:
            return [t for t in self._tasks.values() if t.active]

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        with self._lock:
            return self._tasks.get(str(task_id))

    def set_last_execution(self, task_id: str, timestamp: datetime) -> None:
        with self._lock:
            task = self._tasks.get(str(task_id))
            if task is not None:
                task.last_execution = timestamp

    def append_execution_start(self, record) -> str:
        log_id = str(next(self._log_ids))
        with self._lock:
            self._logs[log_id] = {"id": log_id, **record.start_fields(), "success": False}
        return log_id

    def append_execution_end(self, log_id: str, fields: Dict) -> None:
        with self._lock:
            entry = self._logs.get(str(log_id))
            if entry is None:
                raise KeyError(f"Unknown execution log: {log_id}")
            entry.update(fields)

    # -- Administrative operations --

    def list_tasks(self, active_only: bool = False) -> List[ScheduledTask]:
        with self._lock:
            tasks = list(self._tasks.values())
        return [t for t in tasks if t.active] if active_only else tasks

    def create_task(self, fields: Dict) -> ScheduledTask:
        fields = validate_task_fields(fields, creating=True)
        now = utcnow()
        with self._lock:
            task_id = str(next(self._ids))
            while task_id in self._tasks:
                task_id = str(next(self._ids))
            task = ScheduledTask.from_dict({**fields, "id": task_id})
            task.created_at = task.updated_at = now
            self._tasks[task_id] = task
        return task

    def update_task(self, task_id: str, fields: Dict) -> ScheduledTask:
        updates = {k: v for k, v in fields.items() if k in UPDATABLE_TASK_FIELDS}
        if not updates:
            raise ValueError("No valid fields to update")
        updates = validate_task_fields(updates)
        with self._lock:
            task = self._tasks.get(str(task_id))
            if task is None:
                raise KeyError(f"Task with ID {task_id} not found")
            for key, value in updates.items():
                setattr(task, key, list(value) if key == "subjects" else value)
            task.updated_at = utcnow()
            return task

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            return self._tasks.pop(str(task_id), None) is not None

    def get_execution_logs(self, task_id: str, limit: int = 50) -> List[Dict]:
        with self._lock:
            logs = [dict(e) for e in self._logs.values() if e["task_id"] == str(task_id)]
        logs.sort(key=lambda e: e["started_at"] or "", reverse=True)
        return logs[:limit]

    def get_execution_stats(self, days: int = 30) -> Dict:
        cutoff = (utcnow() - timedelta(days=days)).isoformat()
        with self._lock:
            logs = [dict(e) for e in self._logs.values() if (e["started_at"] or "") >= cutoff]
        return summarize_logs(logs)


def summarize_logs(logs: List[Dict]) -> Dict:
    total = len(logs)
    successful = sum(1 for e in logs if e.get("success"))
    finished = [e for e in logs if e.get("ended_at")]
    return {
        "total_executions": total,
        "successful_executions": successful,
        "failed_executions": total - successful,
        "success_rate": round(successful * 100.0 / total, 2) if total else 0.0,
        "avg_execution_ms": round(sum(e.get("total_ms") or 0 for e in finished) / len(finished)) if finished else 0,
        "avg_tokens_used": round(sum(e.get("tokens_used") or 0 for e in finished) / len(finished)) if finished else 0,
        "total_subjects_processed": sum(e.get("subjects_processed") or 0 for e in logs),
    }


class InMemoryMessageStore(MessageStore):

    def __init__(self, groups: Iterable[Group] = (), messages: Iterable[Message] = ()):
        self._lock = threading.Lock()
        self._groups: Dict[str, Group] = {g.id: g for g in groups}
        self._messages: List[Message] = list(messages)

    def add_group(self, group: Group) -> Group:
        with self._lock:
            self._groups[group.id] = group
        return group

    def add_message(self, message: Message) -> Message:
        with self._lock:
            self._messages.append(message)
            group = self._groups.get(message.group_id)
            if group is not None:
                group.message_count += 1
        return message

    def search_groups(self, search_term: Optional[str] = None, limit: int = 50) -> List[Group]:
        term = (search_term or "").strip().lower()
        with self._lock:
            groups = [g for g in self._groups.values() if g.active and term in g.name.lower()]
        groups.sort(key=lambda g: g.name.lower())
        return groups[:limit]

    def get_group(self, group_id: str) -> Optional[Group]:
        with self._lock:
            return self._groups.get(str(group_id))

    def _select(self, predicate, limit: int) -> List[Message]:
        with self._lock:
            selected = [m for m in self._messages if predicate(m)]
        selected.sort(key=lambda m: m.timestamp, reverse=True)
        return selected[:limit]

    def search_messages(
        self,
        group_id: str,
        query: Optional[str] = None,
        date_start: Optional[date] = None,
        date_end: Optional[date] = None,
        limit: int = 100,
    ) -> List[Message]:
        needle = (query or "").lower()

        def predicate(m: Message) -> bool:
            day = m.timestamp.astimezone(timezone.utc).date()
            return (
                m.group_id == group_id
                and needle in m.text.lower()
                and (date_start is None or day >= date_start)
                and (date_end is None or day <= date_end)
            )

        return self._select(predicate, limit)

    def get_recent_messages(self, group_id: str, since: datetime, limit: int = 50) -> List[Message]:
        return self._select(lambda m: m.group_id == group_id and m.timestamp >= since, limit)

    def get_messages_by_date(
        self, day: date, group_id: Optional[str] = None, limit: int = 100
    ) -> List[Message]:
        return self._select(
            lambda m: m.timestamp.astimezone(timezone.utc).date() == day
            and (group_id is None or m.group_id == group_id),
            limit,
        )


class StaticManagementSource(ManagementSource):
    """Fixed list; also handy for wiring a config-provided allow-list."""

    def __init__(self, subjects: Iterable[str] = ()):
        self._subjects = list(subjects)

    def list_management_subjects(self) -> List[str]:
        return list(self._subjects)
