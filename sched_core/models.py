"""
MODELS
======

Shared data structures for the scheduled-task subsystem.

- ``ScheduledTask``  : persisted task definition (owned by the repository)
- ``ExecutionRecord``: one run's telemetry, started once and finalized once
- ``ExecutionResult``: what the orchestrator hands back to its caller
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


DEFAULT_ACTION_TYPE = "daily_summary"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime). Naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================================
# SCHEDULED TASK
# ============================================================================

@dataclass
class ScheduledTask:
    """A user-defined task: what to ask, on which trigger, where to send it."""
    id: str
    name: str
    trigger: str  # 5-field cron: minute hour day-of-month month day-of-week
    subjects: List[str] = field(default_factory=list)
    destination: Optional[str] = None
    instruction: Optional[str] = None  # Literal instruction; overrides action_type
    action_type: str = DEFAULT_ACTION_TYPE
    active: bool = True
    last_execution: Optional[datetime] = None
    description: str = ""
    created_by: str = "system"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "trigger": self.trigger,
            "subjects": list(self.subjects),
            "destination": self.destination,
            "instruction": self.instruction,
            "action_type": self.action_type,
            "active": self.active,
            "last_execution": _iso(self.last_execution),
            "description": self.description,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ScheduledTask":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            trigger=data.get("trigger", ""),
            subjects=list(data.get("subjects") or []),
            destination=data.get("destination"),
            instruction=data.get("instruction"),
            action_type=data.get("action_type") or DEFAULT_ACTION_TYPE,
            active=bool(data.get("active", True)),
            last_execution=parse_datetime(data.get("last_execution")),
            description=data.get("description", "") or "",
            created_by=data.get("created_by", "system") or "system",
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


# ============================================================================
# EXECUTION RECORD
# ============================================================================

@dataclass
class ExecutionRecord:
    """
    Telemetry for one run of one task.

    Created at execution start (``append_execution_start``) and finalized
    exactly once via ``finalize()``; the repository receives the end fields
    through ``append_execution_end``.
    """
    session_id: str
    task_id: str
    instruction: str
    started_at: datetime = field(default_factory=utcnow)
    execution_type: str = "scheduled"
    ended_at: Optional[datetime] = None
    final_text: Optional[str] = None
    model: Optional[str] = None
    tokens_used: int = 0
    processing_ms: int = 0
    tools_used: List[str] = field(default_factory=list)
    rounds: int = 0
    success: bool = False
    error: Optional[str] = None
    output_message: Optional[str] = None
    output_sent_to: Optional[str] = None
    delivered: bool = False
    total_ms: int = 0
    subjects_processed: int = 0

    @property
    def finalized(self) -> bool:
        return self.ended_at is not None

    def finalize(self, **fields) -> Dict:
        """Set end-of-run fields once and return them for the repository."""
        if self.finalized:
            raise RuntimeError(f"Execution record {self.session_id} already finalized")
        for key, value in fields.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown execution record field: {key}")
            setattr(self, key, value)
        self.ended_at = utcnow()
        if not self.total_ms:
            self.total_ms = int((self.ended_at - self.started_at).total_seconds() * 1000)
        return self.end_fields()

    def start_fields(self) -> Dict:
        return {
            "session_id": self.session_id,
            "task_id": self.task_id,
            "instruction": self.instruction,
            "started_at": _iso(self.started_at),
            "execution_type": self.execution_type,
        }

    def end_fields(self) -> Dict:
        return {
            "ended_at": _iso(self.ended_at),
            "final_text": self.final_text,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "processing_ms": self.processing_ms,
            "tools_used": list(self.tools_used),
            "rounds": self.rounds,
            "success": self.success,
            "error": self.error,
            "output_message": self.output_message,
            "output_sent_to": self.output_sent_to,
            "delivered": self.delivered,
            "total_ms": self.total_ms,
            "subjects_processed": self.subjects_processed,
        }

    def to_dict(self) -> Dict:
        return {**self.start_fields(), **self.end_fields()}


# ============================================================================
# EXECUTION RESULT
# ============================================================================

@dataclass
class ExecutionResult:
    """Outcome of ``ExecutionOrchestrator.execute``."""
    success: bool
    session_id: str
    duration_ms: int
    task_id: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    skipped: bool = False
    delivered: bool = False

    def to_dict(self) -> Dict:
        d = {
            "success": self.success,
            "session_id": self.session_id,
            "duration_ms": self.duration_ms,
            "task_id": self.task_id,
            "skipped": self.skipped,
            "delivered": self.delivered,
        }
        if self.output is not None:
            d["output"] = self.output
        if self.error:
            d["error"] = self.error
            d["error_type"] = self.error_type
        return d
