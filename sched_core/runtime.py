"""
RUNTIME
=======

Wires the collaborators together from a ``SchedCoreConfig``.

::

    storage (sqlite | memory) ─┬─ TaskRepository ───────────────┐
                               ├─ MessageStore ── group tools ──┤
                               └─ ManagementSource ─ allow-list ┤
    delivery (log | webhook) ─── DeliverySink ──────────────────┤
    llm (openai | anthropic) ─── LLM client ── AgentLoop ───────┤
                                                                ▼
                               ExecutionOrchestrator ◄── TaskDispatcher

Only unrecoverable startup problems (unknown storage type, webhook without a
URL, missing API key) raise ``ConfigurationError``; everything after
``start()`` is contained per task.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .config.loader import SchedCoreConfig, get_data_dir
from .delivery import DeliverySink, LogDeliverySink, WebhookDeliverySink
from .errors import ConfigurationError
from .llm import BaseLLMClient, create_llm_client
from .loop import DEFAULT_SYSTEM_PROMPT, AgentLoop
from .orchestrator import ExecutionOrchestrator
from .scheduler.dispatcher import TaskDispatcher
from .scheduler.locks import ExecutionLockRegistry
from .storage import (
    InMemoryMessageStore,
    InMemoryTaskRepository,
    ManagementSource,
    MessageStore,
    SQLiteDatabase,
    SQLiteManagementSource,
    SQLiteMessageStore,
    SQLiteTaskRepository,
    StaticManagementSource,
    TaskRepository,
)
from .tools import ManagementAllowList, ToolRegistry, build_group_tools

logger = logging.getLogger(__name__)


@dataclass
class Storage:
    repository: TaskRepository
    message_store: MessageStore
    management_source: ManagementSource
    db: Optional[SQLiteDatabase] = None

    def close(self) -> None:
        if self.db is not None:
            self.db.close()


def build_storage(config: SchedCoreConfig, data_dir: Optional[Path] = None) -> Storage:
    """Repository, message store and management source for ``storage.type``."""
    storage = config.storage
    if storage.type == "memory":
        return Storage(
            repository=InMemoryTaskRepository(),
            message_store=InMemoryMessageStore(),
            management_source=StaticManagementSource(config.permissions.fallback_management_subjects),
        )
    if storage.type == "sqlite":
        db = SQLiteDatabase(storage.resolve_db_path(Path(data_dir or get_data_dir())))
        return Storage(
            repository=SQLiteTaskRepository(db),
            message_store=SQLiteMessageStore(db),
            management_source=SQLiteManagementSource(db),
            db=db,
        )
    raise ConfigurationError(f"Unknown storage type: {storage.type!r}")


def build_delivery_sink(config: SchedCoreConfig) -> DeliverySink:
    delivery = config.delivery
    if delivery.type == "log":
        return LogDeliverySink()
    if delivery.type == "webhook":
        if not delivery.webhook_url:
            raise ConfigurationError("delivery.type is 'webhook' but delivery.webhook_url is not set")
        return WebhookDeliverySink(
            delivery.webhook_url, timeout_seconds=delivery.timeout_seconds, headers=delivery.headers,
        )
    raise ConfigurationError(f"Unknown delivery type: {delivery.type!r}")


class Runtime:
    """The assembled subsystem. ``start()`` begins polling."""

    def __init__(
        self,
        config: SchedCoreConfig,
        storage: Storage,
        delivery_sink: DeliverySink,
        llm_client: BaseLLMClient,
    ):
        self.config = config
        self.storage = storage
        self.delivery_sink = delivery_sink
        self.llm_client = llm_client

        self.allow_list = ManagementAllowList(
            storage.management_source,
            fallback=config.permissions.fallback_management_subjects,
            cache_seconds=config.permissions.cache_seconds,
        )
        self.registry = ToolRegistry(
            permissions=self.allow_list,
            default_timeout=config.agent.tool_timeout_seconds,
            max_output_size=config.agent.max_tool_output_chars,
        )
        for tool in build_group_tools(storage.message_store, delivery_sink):
            self.registry.register(tool)

        self.agent_loop = AgentLoop(
            llm_client,
            self.registry,
            max_rounds=config.agent.max_rounds,
            system_prompt=config.agent.system_prompt or DEFAULT_SYSTEM_PROMPT,
        )
        self.orchestrator = ExecutionOrchestrator(
            storage.repository,
            self.agent_loop,
            delivery_sink,
            tool_registry=self.registry,
            execution_timeout_seconds=config.scheduler.execution_timeout_seconds,
        )

        sched = config.scheduler
        self.locks = ExecutionLockRegistry(timeout_seconds=sched.lock_timeout_seconds)
        self.dispatcher = TaskDispatcher(
            storage.repository,
            self.orchestrator,
            locks=self.locks,
            poll_interval=sched.poll_interval_seconds,
            first_tick_delay=sched.first_tick_delay_seconds,
            lock_timeout=sched.lock_timeout_seconds,
            idempotency_window=sched.idempotency_window_seconds,
            idempotency_mode=sched.idempotency_mode,
            max_workers=sched.max_workers,
            timezone_name=sched.timezone,
        )

    @property
    def repository(self) -> TaskRepository:
        return self.storage.repository

    def start(self) -> None:
        self.dispatcher.start()
        logger.info("schedCore runtime started with %d tools", len(self.registry.list_tools()))

    def stop(self) -> None:
        self.dispatcher.stop()
        self.registry.shutdown()
        self.storage.close()
        logger.info("schedCore runtime stopped")

    def get_status(self) -> Dict:
        return {
            "healthy": self.orchestrator.is_healthy(),
            "dispatcher": self.dispatcher.get_status(),
            "executions": {
                "running": self.orchestrator.get_running_executions(),
                "stats": self.orchestrator.get_stats(),
            },
            "tools": self.registry.list_tools(),
            "llm": {"provider": self.llm_client.provider, "model": self.llm_client.model},
        }


def build_runtime(
    config: SchedCoreConfig,
    data_dir: Optional[Path] = None,
    llm_client: Optional[BaseLLMClient] = None,
    storage: Optional[Storage] = None,
    delivery_sink: Optional[DeliverySink] = None,
) -> Runtime:
    """Assemble a Runtime; any collaborator may be injected."""
    storage = storage or build_storage(config, data_dir)
    delivery_sink = delivery_sink or build_delivery_sink(config)
    llm_client = llm_client or create_llm_client(config.llm)
    return Runtime(config, storage, delivery_sink, llm_client)
