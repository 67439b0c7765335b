"""
CONFIG_LOADER
=============

Configuration management for schedCore.

Handles:
- Data directory resolution (``$SCHEDCORE_DATA_DIR``, default ``./data/schedcore``)
- Loading/saving ``<data_dir>/config/config.json``
- Typed, per-section access with defaults for every field

Secrets never live in the file: the model API key is read from the
environment variable named by ``llm.api_key_env``.

Usage:
    from sched_core.config import get_config_manager

    config = get_config_manager().config
    print(config.scheduler.poll_interval_seconds)
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "SCHEDCORE_DATA_DIR"
DEFAULT_DATA_DIR = "./data/schedcore"


# ============================================================================
# PATH RESOLUTION
# ============================================================================

def get_data_dir() -> Path:
    """The schedCore data directory (not created)."""
    return Path(os.environ.get(DATA_DIR_ENV) or DEFAULT_DATA_DIR).expanduser()


def default_config_path() -> Path:
    return get_data_dir() / "config" / "config.json"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class SchedulerConfig:
    """Polling, locking and idempotency."""
    poll_interval_seconds: float = 30
    first_tick_delay_seconds: float = 5
    lock_timeout_seconds: float = 120
    idempotency_window_seconds: float = 3600
    idempotency_mode: str = "interval"  # or "minute"
    max_workers: int = 4
    timezone: str = "UTC"
    execution_timeout_seconds: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "poll_interval_seconds": self.poll_interval_seconds,
            "first_tick_delay_seconds": self.first_tick_delay_seconds,
            "lock_timeout_seconds": self.lock_timeout_seconds,
            "idempotency_window_seconds": self.idempotency_window_seconds,
            "idempotency_mode": self.idempotency_mode,
            "max_workers": self.max_workers,
            "timezone": self.timezone,
            "execution_timeout_seconds": self.execution_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SchedulerConfig":
        return cls(
            poll_interval_seconds=data.get("poll_interval_seconds", 30),
            first_tick_delay_seconds=data.get("first_tick_delay_seconds", 5),
            lock_timeout_seconds=data.get("lock_timeout_seconds", 120),
            idempotency_window_seconds=data.get("idempotency_window_seconds", 3600),
            idempotency_mode=data.get("idempotency_mode", "interval"),
            max_workers=data.get("max_workers", 4),
            timezone=data.get("timezone", "UTC"),
            execution_timeout_seconds=data.get("execution_timeout_seconds"),
        )


@dataclass
class AgentSettings:
    """Agent loop limits. ``system_prompt=None`` uses the built-in prompt."""
    max_rounds: int = 10
    system_prompt: Optional[str] = None
    tool_timeout_seconds: float = 30
    max_tool_output_chars: int = 100000

    def to_dict(self) -> Dict:
        return {
            "max_rounds": self.max_rounds,
            "system_prompt": self.system_prompt,
            "tool_timeout_seconds": self.tool_timeout_seconds,
            "max_tool_output_chars": self.max_tool_output_chars,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AgentSettings":
        return cls(
            max_rounds=data.get("max_rounds", 10),
            system_prompt=data.get("system_prompt"),
            tool_timeout_seconds=data.get("tool_timeout_seconds", 30),
            max_tool_output_chars=data.get("max_tool_output_chars", 100000),
        )


@dataclass
class LLMConfig:
    """Model provider settings."""
    provider: str = "openai"  # OpenAI-compatible (incl. OpenRouter) or "anthropic"
    model: str = "openai/gpt-4o-mini"
    base_url: Optional[str] = None
    api_key_env: str = "OPENROUTER_API_KEY"
    temperature: float = 0.7
    max_tokens: int = 2000
    request_timeout_seconds: float = 60

    def to_dict(self) -> Dict:
        return {
            "provider": self.provider,
            "model": self.model,
            "base_url": self.base_url,
            "api_key_env": self.api_key_env,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "request_timeout_seconds": self.request_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "LLMConfig":
        return cls(
            provider=data.get("provider", "openai"),
            model=data.get("model", "openai/gpt-4o-mini"),
            base_url=data.get("base_url"),
            api_key_env=data.get("api_key_env", "OPENROUTER_API_KEY"),
            temperature=data.get("temperature", 0.7),
            max_tokens=data.get("max_tokens", 2000),
            request_timeout_seconds=data.get("request_timeout_seconds", 60),
        )


@dataclass
class DeliveryConfig:
    type: str = "log"  # or "webhook"
    webhook_url: Optional[str] = None
    timeout_seconds: float = 15
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        result = {"type": self.type, "timeout_seconds": self.timeout_seconds}
        if self.webhook_url:
            result["webhook_url"] = self.webhook_url
        if self.headers:
            result["headers"] = dict(self.headers)
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "DeliveryConfig":
        return cls(
            type=data.get("type", "log"),
            webhook_url=data.get("webhook_url"),
            timeout_seconds=data.get("timeout_seconds", 15),
            headers=dict(data.get("headers") or {}),
        )


@dataclass
class StorageConfig:
    type: str = "sqlite"  # or "memory"
    db_path: Optional[str] = None  # None = <data_dir>/schedcore.db

    def to_dict(self) -> Dict:
        return {"type": self.type, "db_path": self.db_path}

    @classmethod
    def from_dict(cls, data: Dict) -> "StorageConfig":
        return cls(type=data.get("type", "sqlite"), db_path=data.get("db_path"))

    def resolve_db_path(self, data_dir: Path) -> str:
        return self.db_path or str(data_dir / "schedcore.db")


@dataclass
class PermissionsConfig:
    """Management allow-list fallback used when the dynamic source fails."""
    fallback_management_subjects: List[str] = field(default_factory=list)
    cache_seconds: float = 60

    def to_dict(self) -> Dict:
        return {
            "fallback_management_subjects": list(self.fallback_management_subjects),
            "cache_seconds": self.cache_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PermissionsConfig":
        return cls(
            fallback_management_subjects=list(data.get("fallback_management_subjects") or []),
            cache_seconds=data.get("cache_seconds", 60),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None  # None = <data_dir>/logs/schedcore.log, "none" disables

    def to_dict(self) -> Dict:
        return {"level": self.level, "file": self.file}

    @classmethod
    def from_dict(cls, data: Dict) -> "LoggingConfig":
        return cls(level=data.get("level", "INFO"), file=data.get("file"))


@dataclass
class SchedCoreConfig:
    """Complete configuration."""
    version: str = "1.0.0"
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    agent: AgentSettings = field(default_factory=AgentSettings)
    llm: LLMConfig = field(default_factory=LLMConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "scheduler": self.scheduler.to_dict(),
            "agent": self.agent.to_dict(),
            "llm": self.llm.to_dict(),
            "delivery": self.delivery.to_dict(),
            "storage": self.storage.to_dict(),
            "permissions": self.permissions.to_dict(),
            "logging": self.logging.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SchedCoreConfig":
        return cls(
            version=data.get("version", "1.0.0"),
            scheduler=SchedulerConfig.from_dict(data.get("scheduler", {})),
            agent=AgentSettings.from_dict(data.get("agent", {})),
            llm=LLMConfig.from_dict(data.get("llm", {})),
            delivery=DeliveryConfig.from_dict(data.get("delivery", {})),
            storage=StorageConfig.from_dict(data.get("storage", {})),
            permissions=PermissionsConfig.from_dict(data.get("permissions", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )


# ============================================================================
# CONFIG MANAGER
# ============================================================================

class ConfigManager:
    """Load and save the configuration file."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else default_config_path()
        self.config: SchedCoreConfig = SchedCoreConfig()

    @property
    def data_dir(self) -> Path:
        """Directory holding the database and logs: the parent of ``config/``."""
        parent = self.config_path.parent
        return parent.parent if parent.name == "config" else parent

    def load(self) -> SchedCoreConfig:
        """Load from file. A missing file is created with defaults."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("top-level value must be an object")
                self.config = SchedCoreConfig.from_dict(data)
            except (OSError, ValueError) as e:
                logger.warning("Could not load config %s: %s, using defaults", self.config_path, e)
                self.config = SchedCoreConfig()
        else:
            self.config = SchedCoreConfig()
            self.save()
        return self.config

    def save(self) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(self.config.to_dict(), f, indent=2)


# ============================================================================
# GLOBAL INSTANCE
# ============================================================================

_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[str] = None) -> ConfigManager:
    """Get or create the process-wide config manager."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(config_path)
        _config_manager.load()
    return _config_manager


def load_config() -> SchedCoreConfig:
    return get_config_manager().config
