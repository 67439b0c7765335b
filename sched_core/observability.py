"""
OBSERVABILITY
=============

Per-execution context and cost estimation.

Provides contextvars-based access to the execution currently running on this
thread (session id, task id), so log lines deep in the agent loop can be
tagged without threading the ids through every call.

Usage::

    from sched_core.observability import execution_scope, current_session_id

    with execution_scope(session_id, task_id):
        logger.info("[%s] round 1", current_session_id())
"""

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional


@dataclass(frozen=True)
class ExecutionScope:
    session_id: str
    task_id: Optional[str] = None


_current_execution: contextvars.ContextVar[Optional[ExecutionScope]] = contextvars.ContextVar(
    "schedcore_execution", default=None
)


def set_current_execution(session_id: str, task_id: Optional[str] = None) -> contextvars.Token:
    return _current_execution.set(ExecutionScope(session_id, task_id))


def get_current_execution() -> Optional[ExecutionScope]:
    return _current_execution.get()


def clear_current_execution(token: contextvars.Token) -> None:
    _current_execution.reset(token)


def current_session_id() -> str:
    """Session id of the running execution, or ``"-"`` outside one."""
    scope = _current_execution.get()
    return scope.session_id if scope else "-"


@contextmanager
def execution_scope(session_id: str, task_id: Optional[str] = None) -> Iterator[ExecutionScope]:
    token = set_current_execution(session_id, task_id)
    try:
        yield _current_execution.get()
    finally:
        clear_current_execution(token)


# ============================================================================
# COST ESTIMATION
# ============================================================================

# USD per 1M tokens (update when pricing changes)
COST_PER_MILLION: Dict[str, Dict[str, float]] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "claude-haiku-4-5-20251001": {"input": 0.80, "output": 4.00},
    "claude-3-5-sonnet-20241022": {"input": 3.00, "output": 15.00},
    "anthropic/claude-3.5-sonnet": {"input": 3.00, "output": 15.00},
    # OpenAI
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "openai/gpt-4o-mini": {"input": 0.15, "output": 0.60},
}


def estimate_cost(model: Optional[str], tokens_in: int, tokens_out: int) -> Optional[float]:
    """Estimate USD cost for a model call. Returns None if model not in table."""
    rates = COST_PER_MILLION.get(model or "")
    if not rates:
        return None
    return (tokens_in * rates["input"] / 1_000_000) + (tokens_out * rates["output"] / 1_000_000)
