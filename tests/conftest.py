"""Shared fixtures: in-memory storage, recording sink, tool registry."""

from datetime import timedelta

import pytest

from sched_core.loop import AgentLoop
from sched_core.orchestrator import ExecutionOrchestrator
from sched_core.storage import (
    Group,
    InMemoryMessageStore,
    InMemoryTaskRepository,
    Message,
    StaticManagementSource,
)
from sched_core.tools import ManagementAllowList, ToolRegistry, build_group_tools

from .helpers import NOW, RecordingSink, ScriptedLLM


@pytest.fixture
def repository():
    return InMemoryTaskRepository()


@pytest.fixture
def message_store():
    store = InMemoryMessageStore(groups=[
        Group(id="g1", name="AI Group"),
        Group(id="g2", name="AI Research"),
        Group(id="g3", name="Ops"),
    ])
    base = NOW - timedelta(hours=2)
    for i, text in enumerate(["model release today", "benchmarks look good", "lunch?"]):
        store.add_message(Message(
            id=f"m{i}", group_id="g1", sender=f"user{i}", text=text,
            timestamp=base + timedelta(minutes=10 * i),
        ))
    store.add_message(Message(
        id="old", group_id="g1", sender="user9", text="last week's news",
        timestamp=NOW - timedelta(days=7),
    ))
    return store


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def allow_list():
    return ManagementAllowList(StaticManagementSource(["Ops"]))


@pytest.fixture
def registry(message_store, sink, allow_list):
    reg = ToolRegistry(permissions=allow_list, default_timeout=5)
    for tool in build_group_tools(message_store, sink):
        reg.register(tool)
    yield reg
    reg.shutdown()


@pytest.fixture
def make_orchestrator(repository, registry, sink):
    """Factory: orchestrator around a ScriptedLLM with the given replies."""

    def factory(replies=None, max_rounds: int = 10, **kwargs):
        llm = ScriptedLLM(replies)
        loop = AgentLoop(llm, registry, max_rounds=max_rounds)
        orchestrator = ExecutionOrchestrator(repository, loop, sink, tool_registry=registry, **kwargs)
        return orchestrator, llm

    return factory
