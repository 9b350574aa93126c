"""
Configuration Dataclasses

Type-safe configuration structures for the config engine and the
database pool. Loaded from a YAML file, then overridden from the
environment.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError
from .logging_setup import get_service_logger

logger = get_service_logger("config")

DEFAULT_NAMESPACE = "/micro/config"
DEFAULT_ETCD_URL = "http://127.0.0.1:2379/v3"


class FailurePolicy(str, Enum):
    """What the watch loop does after a tick fails"""
    CONTINUE = "continue"  # log, wait for the next interval
    STOP = "stop"          # log, record the error, stop ticking


class ExhaustedPolicy(str, Enum):
    """What borrow() does when every connection is in use"""
    BLOCK = "block"
    FAIL = "fail"


@dataclass
class EtcdSettings:
    """Remote key-value store endpoint"""
    url: str = DEFAULT_ETCD_URL
    user: str = ""
    password: str = ""
    timeout: float = 5.0


@dataclass
class WatchSettings:
    """Namespace and polling behaviour"""
    namespace: str = DEFAULT_NAMESPACE
    interval_s: int = 5
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE

    # Retry of a failed scan before the policy applies
    max_retries: int = 0
    retry_backoff: list[float] = field(default_factory=lambda: [1.0, 2.0, 4.0])


@dataclass
class PoolSettings:
    """Connection pool limits"""
    max_idle: int = 5
    max_active: int = 5
    exhausted_policy: ExhaustedPolicy = ExhaustedPolicy.BLOCK
    wait_timeout_s: float | None = None


@dataclass
class DatabaseSettings:
    """Database facade configuration"""
    path: str = ":memory:"
    pool: PoolSettings = field(default_factory=PoolSettings)


@dataclass
class ServiceSettings:
    """Watch service runtime configuration"""
    health_host: str = "127.0.0.1"
    health_port: int = 8085
    source_path: str | None = None
    mirror_path: str | None = None


@dataclass
class AppConfig:
    """Complete kvmirror configuration"""
    etcd: EtcdSettings = field(default_factory=EtcdSettings)
    watch: WatchSettings = field(default_factory=WatchSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    service: ServiceSettings = field(default_factory=ServiceSettings)

    def validate(self) -> list[str]:
        """Return a list of error messages (empty when valid)"""
        errors: list[str] = []

        if not self.etcd.url:
            errors.append("etcd.url is required")
        if self.etcd.timeout <= 0:
            errors.append("etcd.timeout must be positive")

        if not self.watch.namespace:
            errors.append("watch.namespace cannot be empty")
        if self.watch.interval_s < 1:
            errors.append("watch.interval_s must be >= 1")
        if self.watch.max_retries < 0:
            errors.append("watch.max_retries cannot be negative")
        if any(delay < 0 for delay in self.watch.retry_backoff):
            errors.append("watch.retry_backoff cannot contain negative delays")

        pool = self.database.pool
        if pool.max_idle < 0:
            errors.append("database.pool.max_idle cannot be negative")
        if pool.max_active < 1:
            errors.append("database.pool.max_active must be >= 1")
        if pool.wait_timeout_s is not None and pool.wait_timeout_s <= 0:
            errors.append("database.pool.wait_timeout_s must be positive")

        if not 0 < self.service.health_port < 65536:
            errors.append("service.health_port out of range")

        return errors


def _apply_env(config: AppConfig) -> None:
    """Environment variables win over the YAML file"""
    env = os.environ
    if "KVMIRROR_ETCD_URL" in env:
        config.etcd.url = env["KVMIRROR_ETCD_URL"]
    if "KVMIRROR_ETCD_USER" in env:
        config.etcd.user = env["KVMIRROR_ETCD_USER"]
    if "KVMIRROR_ETCD_PASSWORD" in env:
        config.etcd.password = env["KVMIRROR_ETCD_PASSWORD"]
    if "KVMIRROR_NAMESPACE" in env:
        config.watch.namespace = env["KVMIRROR_NAMESPACE"]
    try:
        if "KVMIRROR_ETCD_TIMEOUT" in env:
            config.etcd.timeout = float(env["KVMIRROR_ETCD_TIMEOUT"])
        if "KVMIRROR_INTERVAL" in env:
            config.watch.interval_s = int(env["KVMIRROR_INTERVAL"])
    except ValueError as e:
        raise ConfigError(f"Invalid numeric environment override: {e}") from e


def load_app_config_dict(data: dict[str, Any]) -> AppConfig:
    """Build AppConfig from a dictionary (e.g., parsed YAML)"""
    etcd_data = data.get("etcd", {}) or {}
    watch_data = data.get("watch", {}) or {}
    db_data = data.get("database", {}) or {}
    pool_data = db_data.get("pool", {}) or {}
    service_data = data.get("service", {}) or {}

    try:
        etcd = EtcdSettings(
            url=etcd_data.get("url", DEFAULT_ETCD_URL),
            user=etcd_data.get("user", ""),
            password=etcd_data.get("password", ""),
            timeout=float(etcd_data.get("timeout", 5.0)),
        )
        watch = WatchSettings(
            namespace=watch_data.get("namespace", DEFAULT_NAMESPACE),
            interval_s=int(watch_data.get("interval_s", 5)),
            failure_policy=FailurePolicy(watch_data.get("failure_policy", "continue")),
            max_retries=int(watch_data.get("max_retries", 0)),
            retry_backoff=[float(d) for d in watch_data.get("retry_backoff", [1.0, 2.0, 4.0])],
        )
        pool = PoolSettings(
            max_idle=int(pool_data.get("max_idle", 5)),
            max_active=int(pool_data.get("max_active", 5)),
            exhausted_policy=ExhaustedPolicy(pool_data.get("exhausted_policy", "block")),
            wait_timeout_s=pool_data.get("wait_timeout_s"),
        )
        database = DatabaseSettings(path=db_data.get("path", ":memory:"), pool=pool)
        service = ServiceSettings(
            health_host=service_data.get("health_host", "127.0.0.1"),
            health_port=int(service_data.get("health_port", 8085)),
            source_path=service_data.get("source_path"),
            mirror_path=service_data.get("mirror_path"),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    return AppConfig(etcd=etcd, watch=watch, database=database, service=service)


def load_app_config(config_path: str | Path | None = None) -> AppConfig:
    """
    Load configuration from YAML file plus environment overrides.

    Args:
        config_path: Path to the YAML file. A missing file yields defaults.

    Returns:
        Validated AppConfig

    Raises:
        ConfigError: YAML could not be parsed or validation failed
    """
    data: dict[str, Any] = {}

    if config_path is not None:
        path = Path(config_path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning(f"Config file not found: {path}, using defaults")
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing config: {e}", path=str(path)) from e

        if not isinstance(data, dict):
            raise ConfigError("Top-level YAML document must be a mapping", path=str(path))

    config = load_app_config_dict(data)
    _apply_env(config)

    errors = config.validate()
    if errors:
        raise ConfigError("; ".join(errors), path=str(config_path) if config_path else None)

    return config
