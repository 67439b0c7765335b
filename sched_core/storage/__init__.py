"""
Storage collaborators: task repository, message store, management source.
"""

from .base import (
    Group,
    ManagementSource,
    Message,
    MessageStore,
    TaskRepository,
    UPDATABLE_TASK_FIELDS,
)
from .memory import InMemoryMessageStore, InMemoryTaskRepository, StaticManagementSource
from .sqlite import (
    SQLiteDatabase,
    SQLiteManagementSource,
    SQLiteMessageStore,
    SQLiteTaskRepository,
)

__all__ = [
    "Group",
    "ManagementSource",
    "Message",
    "MessageStore",
    "TaskRepository",
    "UPDATABLE_TASK_FIELDS",
    "InMemoryMessageStore",
    "InMemoryTaskRepository",
    "StaticManagementSource",
    "SQLiteDatabase",
    "SQLiteManagementSource",
    "SQLiteMessageStore",
    "SQLiteTaskRepository",
]
