"""
Common Utilities

Shared modules used across the config engine and the database pool:
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Interval scheduler
"""

from .config import (
    AppConfig,
    EtcdSettings,
    WatchSettings,
    PoolSettings,
    DatabaseSettings,
    ServiceSettings,
    FailurePolicy,
    ExhaustedPolicy,
    DEFAULT_NAMESPACE,
    load_app_config,
    load_app_config_dict,
)
from .exceptions import (
    KvMirrorError,
    ConfigError,
    RemoteUnavailableError,
    AuthenticationError,
    AlreadyActiveError,
    PoolError,
    PoolExhaustedError,
    TransactionError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    set_log_level,
    log_change_event,
    log_sync_result,
)
from .scheduler import ScheduledLoop

__all__ = [
    # Config
    "AppConfig",
    "EtcdSettings",
    "WatchSettings",
    "PoolSettings",
    "DatabaseSettings",
    "ServiceSettings",
    "FailurePolicy",
    "ExhaustedPolicy",
    "DEFAULT_NAMESPACE",
    "load_app_config",
    "load_app_config_dict",
    # Exceptions
    "KvMirrorError",
    "ConfigError",
    "RemoteUnavailableError",
    "AuthenticationError",
    "AlreadyActiveError",
    "PoolError",
    "PoolExhaustedError",
    "TransactionError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "set_log_level",
    "log_change_event",
    "log_sync_result",
    # Scheduling
    "ScheduledLoop",
]
