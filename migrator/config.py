"""Migrator configuration.

Environment-based configuration for the schema migrator. Each section
reads its own variables through ``from_env`` so callers can build a
config from a custom environment (tests, local runner).
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .base import DEFAULT_LEDGER_TABLE, DEFAULT_LOCK_KEY, LockKey

TRUTHY = {"1", "true", "yes"}


def _get(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    value = _get(env, key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _seconds_from_ms(env: Mapping[str, str], key: str, default_ms: int) -> float:
    return _int(env, key, default_ms) / 1000.0


@dataclass
class DatabaseSettings:
    """Raw database connection settings.

    Attributes:
        secret_arn: Secret store identifier holding JSON credentials
        host: Explicit database host (DB_HOST)
        port: Explicit port as given (validated by the resolver)
        user: Explicit username
        password: Explicit password
        name: Explicit database name
        proxy_endpoint: Connection-pool proxy endpoint
        proxy_name: Proxy name used for backend health checks
        cluster_endpoint: Direct cluster endpoint used as fallback
        ssl_mode: Libpq-style SSL mode (require, verify-full, ...)
        ssl: Raw DB_SSL flag
    """

    secret_arn: Optional[str] = None
    host: Optional[str] = None
    port: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None
    proxy_endpoint: Optional[str] = None
    proxy_name: Optional[str] = None
    cluster_endpoint: Optional[str] = None
    ssl_mode: Optional[str] = None
    ssl: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "DatabaseSettings":
        env = os.environ if env is None else env
        return cls(
            secret_arn=_get(env, "DB_SECRET_ARN"),
            host=_get(env, "DB_HOST"),
            port=_get(env, "DB_PORT"),
            user=_get(env, "DB_USER"),
            password=_get(env, "DB_PASSWORD"),
            name=_get(env, "DB_NAME"),
            proxy_endpoint=_get(env, "DB_PROXY_ENDPOINT"),
            proxy_name=_get(env, "DB_PROXY_NAME"),
            cluster_endpoint=_get(env, "DB_CLUSTER_ENDPOINT"),
            ssl_mode=_get(env, "DB_SSL_MODE"),
            ssl=_get(env, "DB_SSL"),
        )


@dataclass
class ConnectSettings:
    """Connection retry policy (delays in seconds)."""

    attempts: int = 12
    base_delay: float = 10.0
    max_delay: float = 120.0
    timeout: float = 30.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ConnectSettings":
        env = os.environ if env is None else env
        return cls(
            attempts=max(1, _int(env, "MIGRATIONS_CONNECT_ATTEMPTS", 12)),
            base_delay=_seconds_from_ms(env, "MIGRATIONS_CONNECT_BASE_DELAY_MS", 10000),
            timeout=_seconds_from_ms(env, "MIGRATIONS_CONNECT_TIMEOUT_MS", 30000),
        )


@dataclass
class ProxyWaitSettings:
    """Proxy backend health polling policy."""

    attempts: int = 60
    interval: float = 10.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ProxyWaitSettings":
        env = os.environ if env is None else env
        return cls(
            attempts=max(1, _int(env, "MIGRATIONS_PROXY_WAIT_ATTEMPTS", 60)),
            interval=_seconds_from_ms(env, "MIGRATIONS_PROXY_WAIT_INTERVAL_MS", 10000),
        )


@dataclass
class LedgerSettings:
    """Ledger table and advisory lock overrides."""

    table: str = DEFAULT_LEDGER_TABLE
    lock_key: LockKey = DEFAULT_LOCK_KEY
    # Raw override text when it could not be parsed
    invalid_lock_override: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "LedgerSettings":
        env = os.environ if env is None else env
        lock_key = DEFAULT_LOCK_KEY
        invalid_lock_override = None
        partition = _get(env, "MIGRATIONS_LOCK_PARTITION")
        token = _get(env, "MIGRATIONS_LOCK_TOKEN")
        # Both halves are required for an override
        if partition is not None and token is not None:
            try:
                lock_key = LockKey(int(partition), int(token))
            except ValueError:
                invalid_lock_override = f"{partition}/{token}"
        return cls(
            table=_get(env, "MIGRATIONS_LEDGER_TABLE") or DEFAULT_LEDGER_TABLE,
            lock_key=lock_key,
            invalid_lock_override=invalid_lock_override,
        )


@dataclass
class AlarmSettings:
    """Failure notification targets."""

    topic_arn: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    timeout_seconds: int = 10

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AlarmSettings":
        env = os.environ if env is None else env
        return cls(
            topic_arn=_get(env, "MIGRATION_ALARM_TOPIC_ARN") or _get(env, "ALARM_TOPIC_ARN"),
            webhook_url=_get(env, "MIGRATION_ALARM_WEBHOOK_URL"),
            webhook_secret=_get(env, "MIGRATION_ALARM_WEBHOOK_SECRET"),
            timeout_seconds=_int(env, "MIGRATION_ALARM_TIMEOUT", 10),
        )


@dataclass
class MigratorConfig:
    """Complete migrator configuration."""

    migrations_dir: str = "./migrations"
    paused: bool = False
    region: Optional[str] = None
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    connect: ConnectSettings = field(default_factory=ConnectSettings)
    proxy_wait: ProxyWaitSettings = field(default_factory=ProxyWaitSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    alarms: AlarmSettings = field(default_factory=AlarmSettings)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MigratorConfig":
        """Load configuration from environment variables."""
        env = os.environ if env is None else env
        mode = (_get(env, "MIGRATIONS_MODE") or _get(env, "MIGRATION_MODE") or "").lower()
        paused_flag = _get(env, "MIGRATIONS_PAUSED") or _get(env, "MIGRATIONS_DISABLED") or ""
        paused = mode in {"paused", "pause"} or paused_flag.lower() in TRUTHY
        return cls(
            migrations_dir=_get(env, "MIGRATIONS_ROOT")
            or _get(env, "MIGRATIONS_DIR")
            or "./migrations",
            paused=paused,
            region=_get(env, "AWS_REGION") or _get(env, "AWS_DEFAULT_REGION"),
            database=DatabaseSettings.from_env(env),
            connect=ConnectSettings.from_env(env),
            proxy_wait=ProxyWaitSettings.from_env(env),
            ledger=LedgerSettings.from_env(env),
            alarms=AlarmSettings.from_env(env),
        )

    def validate(self) -> list[str]:
        """Validate configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []
        db = self.database
        if not db.secret_arn and not (db.host or db.proxy_endpoint):
            errors.append("DB_HOST, DB_PROXY_ENDPOINT or DB_SECRET_ARN is required")
        if db.port is not None and not db.port.isdigit():
            errors.append(f"DB_PORT must be numeric, got {db.port!r}")
        if db.proxy_name and not db.proxy_endpoint:
            errors.append("DB_PROXY_NAME is set but DB_PROXY_ENDPOINT is not")
        if self.connect.base_delay < 0 or self.connect.timeout <= 0:
            errors.append("Connection delays must be positive")
        if self.ledger.invalid_lock_override is not None:
            errors.append(
                "MIGRATIONS_LOCK_PARTITION and MIGRATIONS_LOCK_TOKEN must be integers, "
                f"got {self.ledger.invalid_lock_override!r}; using the default lock key"
            )
        return errors


# Global configuration instance
_config: Optional[MigratorConfig] = None


def get_config() -> MigratorConfig:
    """Get the global migrator configuration."""
    global _config
    if _config is None:
        _config = MigratorConfig.from_env()
    return _config


def set_config(config: Optional[MigratorConfig]) -> None:
    """Set (or reset with None) the global migrator configuration."""
    global _config
    _config = config
