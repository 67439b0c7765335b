"""
API_APP
=======

FastAPI admin API for schedCore.

Endpoints:
    GET    /health                     Health check
    GET    /status                     Dispatcher, executions and tool status
    GET    /api/tasks                  List tasks (?active_only=true)
    POST   /api/tasks                  Create a task
    GET    /api/tasks/{task_id}        Get a task
    PATCH  /api/tasks/{task_id}        Update task fields
    DELETE /api/tasks/{task_id}        Delete a task
    POST   /api/tasks/{task_id}/trigger  Run a task now (synchronous)
    GET    /api/tasks/{task_id}/runs   Execution history
    GET    /api/stats                  Execution statistics (?days=30)
    POST   /api/cron/validate          Validate a trigger, preview next runs

Usage:
    app = create_app(runtime)
    uvicorn.run(app, host="127.0.0.1", port=8432)
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .. import __version__
from ..models import ScheduledTask
from ..scheduler.trigger import InvalidTrigger, describe_trigger, is_valid_trigger, next_runs, parse_schedule

logger = logging.getLogger(__name__)


# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str


class TaskInfo(BaseModel):
    """Scheduled task as returned by the API."""
    id: str
    name: str
    trigger: str
    trigger_description: str
    subjects: List[str]
    destination: Optional[str] = None
    instruction: Optional[str] = None
    action_type: str
    active: bool
    last_execution: Optional[str] = None
    next_run: Optional[str] = None
    description: str = ""
    created_by: str = "system"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CreateTaskRequest(BaseModel):
    """Request to create a task."""
    name: str = Field(..., min_length=1)
    trigger: str = Field(..., description="Cron expression or readable schedule (\"every day at 16:00\")")
    subjects: List[str] = []
    destination: Optional[str] = None
    instruction: Optional[str] = Field(None, description="Literal instruction; overrides action_type")
    action_type: str = "daily_summary"
    active: bool = True
    description: str = ""
    created_by: str = "api"


class UpdateTaskRequest(BaseModel):
    """Partial task update; omitted fields are left unchanged."""
    name: Optional[str] = None
    trigger: Optional[str] = None
    subjects: Optional[List[str]] = None
    destination: Optional[str] = None
    instruction: Optional[str] = None
    action_type: Optional[str] = None
    active: Optional[bool] = None
    description: Optional[str] = None


class TriggerTaskResponse(BaseModel):
    """Outcome of a manual run."""
    task_id: str
    success: bool
    session_id: str
    duration_ms: int
    skipped: bool = False
    delivered: bool = False
    output: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class CronValidateRequest(BaseModel):
    expression: str
    count: int = Field(5, ge=1, le=50)


class CronValidateResponse(BaseModel):
    expression: str
    valid: bool
    description: Optional[str] = None
    next_runs: List[str] = []
    error: Optional[str] = None


# ============================================================================
# HELPERS
# ============================================================================

def task_info(task: ScheduledTask, now: Optional[datetime] = None) -> TaskInfo:
    """``now`` should be in the scheduler timezone so next_run matches dispatch."""
    data = task.to_dict()
    upcoming = None
    if task.active and is_valid_trigger(task.trigger):
        upcoming = next_runs(task.trigger, now or datetime.now(timezone.utc), count=1)[0].isoformat()
    return TaskInfo(
        **data,
        trigger_description=describe_trigger(task.trigger),
        next_run=upcoming,
    )


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(runtime, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the admin API around a Runtime.

    Args:
        runtime: Assembled ``Runtime``
        manage_lifecycle: Start the runtime with the app and stop it on shutdown
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            runtime.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                runtime.stop()

    app = FastAPI(
        title="schedCore API",
        description="Scheduled task execution: tasks, runs and dispatcher status",
        version=__version__,
        lifespan=lifespan,
    )
    repository = runtime.repository

    def _now() -> datetime:
        # Triggers are evaluated in the dispatcher's timezone
        return runtime.dispatcher.now()

    def _get_or_404(task_id: str) -> ScheduledTask:
        task = repository.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        return task

    # ========================================================================
    # HEALTH & STATUS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    def health_check():
        healthy = runtime.orchestrator.is_healthy()
        return HealthResponse(
            status="healthy" if healthy else "degraded",
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/status", tags=["System"])
    def get_status() -> Dict:
        return runtime.get_status()

    # ========================================================================
    # TASKS
    # ========================================================================

    @app.get("/api/tasks", response_model=List[TaskInfo], tags=["Tasks"])
    def list_tasks(active_only: bool = Query(False)):
        now = _now()
        return [task_info(t, now) for t in repository.list_tasks(active_only=active_only)]

    @app.post("/api/tasks", response_model=TaskInfo, status_code=201, tags=["Tasks"])
    def create_task(request: CreateTaskRequest):
        try:
            task = repository.create_task(request.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        logger.info("Task %s created via API (%s)", task.id, task.name)
        return task_info(task, _now())

    @app.get("/api/tasks/{task_id}", response_model=TaskInfo, tags=["Tasks"])
    def get_task(task_id: str):
        return task_info(_get_or_404(task_id), _now())

    @app.patch("/api/tasks/{task_id}", response_model=TaskInfo, tags=["Tasks"])
    def update_task(task_id: str, request: UpdateTaskRequest):
        _get_or_404(task_id)
        fields = request.model_dump(exclude_unset=True)
        if not fields:
            raise HTTPException(status_code=400, detail="No fields to update")
        try:
            task = repository.update_task(task_id, fields)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return task_info(task, _now())

    @app.delete("/api/tasks/{task_id}", tags=["Tasks"])
    def delete_task(task_id: str):
        if not repository.delete_task(task_id):
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        logger.info("Task %s deleted via API", task_id)
        return {"success": True, "task_id": task_id}

    @app.post("/api/tasks/{task_id}/trigger", response_model=TriggerTaskResponse, tags=["Tasks"])
    def trigger_task(task_id: str):
        _get_or_404(task_id)
        result = runtime.dispatcher.trigger_task(task_id)
        return TriggerTaskResponse(
            task_id=task_id,
            success=result.success,
            session_id=result.session_id,
            duration_ms=result.duration_ms,
            skipped=result.skipped,
            delivered=result.delivered,
            output=result.output,
            error=result.error,
            error_type=result.error_type,
        )

    @app.get("/api/tasks/{task_id}/runs", tags=["Tasks"])
    def get_task_runs(task_id: str, limit: int = Query(20, ge=1, le=500)) -> List[Dict]:
        _get_or_404(task_id)
        return repository.get_execution_logs(task_id, limit=limit)

    @app.get("/api/stats", tags=["Tasks"])
    def get_stats(days: int = Query(30, ge=1, le=3650)) -> Dict:
        return {
            "days": days,
            "history": repository.get_execution_stats(days=days),
            "process": runtime.orchestrator.get_stats(),
        }

    # ========================================================================
    # TRIGGERS
    # ========================================================================

    @app.post("/api/cron/validate", response_model=CronValidateResponse, tags=["Triggers"])
    def validate_cron(request: CronValidateRequest):
        try:
            expression = parse_schedule(request.expression)
        except InvalidTrigger:
            return CronValidateResponse(
                expression=request.expression.strip(), valid=False, error="Invalid trigger expression",
            )
        try:
            upcoming = next_runs(expression, _now(), count=request.count)
        except (InvalidTrigger, ValueError) as e:
            return CronValidateResponse(expression=expression, valid=False, error=str(e))
        return CronValidateResponse(
            expression=expression,
            valid=True,
            description=describe_trigger(expression),
            next_runs=[d.isoformat() for d in upcoming],
        )

    return app
