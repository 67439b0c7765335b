"""
STORAGE_BASE
============

Interfaces for the collaborators the core consumes.

- ``TaskRepository``  : task definitions + execution history
- ``MessageStore``    : group lookup and message search (used by tools only)
- ``ManagementSource``: dynamic allow-list of management subjects

Implementations are expected to be thread-safe: the dispatcher runs task
executions on a worker pool.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..models import ScheduledTask
from ..scheduler.trigger import parse_schedule


# Fields an administrative update may touch
UPDATABLE_TASK_FIELDS = (
    "name", "description", "trigger", "subjects", "destination",
    "instruction", "action_type", "active",
)


def validate_task_fields(fields: Dict[str, Any], creating: bool = False) -> Dict[str, Any]:
    """
    Check task fields and return a copy with the trigger in cron form.

    Readable schedules ("every day at 16:00") are converted with
    ``parse_schedule``.

    Raises:
        InvalidTrigger: trigger is neither cron nor a readable schedule
        ValueError: missing required field or malformed subjects
    """
    if creating:
        for required in ("name", "trigger"):
            if not fields.get(required):
                raise ValueError(f"Missing required task field: {required}")
    normalized = dict(fields)
    if "trigger" in fields:
        normalized["trigger"] = parse_schedule(fields["trigger"])
    if "subjects" in fields and not isinstance(fields["subjects"], (list, tuple)):
        raise ValueError("subjects must be a list of names")
    return normalized


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Group:
    id: str
    name: str
    active: bool = True
    message_count: int = 0

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "active": self.active,
            "message_count": self.message_count,
        }


@dataclass
class Message:
    id: str
    group_id: str
    sender: str
    text: str
    timestamp: datetime

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================================
# INTERFACES
# ============================================================================

class TaskRepository(ABC):
    """Durable storage for task definitions and execution history."""

    # -- Operations the core needs --

    @abstractmethod
    def list_active_tasks(self) -> List[ScheduledTask]:
        pass

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        pass

    @abstractmethod
    def set_last_execution(self, task_id: str, timestamp: datetime) -> None:
        pass

    @abstractmethod
    def append_execution_start(self, record) -> str:
        """Persist the start of an ExecutionRecord; returns a log id."""

    @abstractmethod
    def append_execution_end(self, log_id: str, fields: Dict) -> None:
        pass

    # -- Administrative operations --

    @abstractmethod
    def list_tasks(self, active_only: bool = False) -> List[ScheduledTask]:
        pass

    @abstractmethod
    def create_task(self, fields: Dict) -> ScheduledTask:
        pass

    @abstractmethod
    def update_task(self, task_id: str, fields: Dict) -> ScheduledTask:
        pass

    @abstractmethod
    def delete_task(self, task_id: str) -> bool:
        pass

    @abstractmethod
    def get_execution_logs(self, task_id: str, limit: int = 50) -> List[Dict]:
        pass

    @abstractmethod
    def get_execution_stats(self, days: int = 30) -> Dict:
        pass


class MessageStore(ABC):
    """Read access to groups and their messages. Results are newest first."""

    @abstractmethod
    def search_groups(self, search_term: Optional[str] = None, limit: int = 50) -> List[Group]:
        pass

    @abstractmethod
    def get_group(self, group_id: str) -> Optional[Group]:
        pass

    def find_group_by_name(self, name: str) -> Optional[Group]:
        """Exact (case-insensitive) match first, then first partial match."""
        wanted = name.strip().lower()
        candidates = self.search_groups(name.strip(), limit=50)
        for group in candidates:
            if group.name.lower() == wanted:
                return group
        return candidates[0] if candidates else None

    @abstractmethod
    def search_messages(
        self,
        group_id: str,
        query: Optional[str] = None,
        date_start: Optional[date] = None,
        date_end: Optional[date] = None,
        limit: int = 100,
    ) -> List[Message]:
        pass

    @abstractmethod
    def get_recent_messages(self, group_id: str, since: datetime, limit: int = 50) -> List[Message]:
        pass

    @abstractmethod
    def get_messages_by_date(
        self, day: date, group_id: Optional[str] = None, limit: int = 100
    ) -> List[Message]:
        pass


class ManagementSource(ABC):
    """Where the list of management subjects comes from."""

    @abstractmethod
    def list_management_subjects(self) -> List[str]:
        pass
