"""
Configuration management for schedCore.
"""

from .loader import (
    AgentSettings,
    ConfigManager,
    DeliveryConfig,
    LLMConfig,
    LoggingConfig,
    PermissionsConfig,
    SchedCoreConfig,
    SchedulerConfig,
    StorageConfig,
    get_config_manager,
    get_data_dir,
    load_config,
)

__all__ = [
    "AgentSettings",
    "ConfigManager",
    "DeliveryConfig",
    "LLMConfig",
    "LoggingConfig",
    "PermissionsConfig",
    "SchedCoreConfig",
    "SchedulerConfig",
    "StorageConfig",
    "get_config_manager",
    "get_data_dir",
    "load_config",
]
