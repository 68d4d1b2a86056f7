"""Database connection resolution.

Turns raw environment settings and an optional secret-store payload into
a primary connection target and, when a proxy is configured, a direct
cluster fallback with identical credentials.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Optional, Protocol

from .base import ConfigurationError
from .config import DatabaseSettings

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5432
SSL_MODES_ENABLED = {"require", "verify-full", "verify-ca", "true", "1"}
LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class SecretSource(Protocol):
    async def get_secret(self, secret_id: str) -> dict[str, Any]: ...


@dataclass(frozen=True)
class DatabaseTarget:
    """A concrete endpoint with credentials."""

    host: str
    port: int
    user: str
    password: str
    database: str
    ssl: bool = True

    def describe(self) -> str:
        return f"{self.user}@{self.host}:{self.port}/{self.database}"


@dataclass(frozen=True)
class ResolvedDatabaseConfig:
    """Result of connection resolution."""

    primary: DatabaseTarget
    fallback: Optional[DatabaseTarget] = None
    proxy_name: Optional[str] = None
    primary_endpoint_type: str = "cluster"


def determine_ssl(settings: DatabaseSettings, host: str) -> bool:
    """Decide whether to encrypt the connection.

    An explicit SSL mode wins, then an explicit DB_SSL=false; otherwise
    every non-loopback host is encrypted.
    """
    if settings.ssl_mode:
        return settings.ssl_mode.lower() in SSL_MODES_ENABLED
    if settings.ssl is not None and settings.ssl.lower() == "false":
        return False
    return host not in LOOPBACK_HOSTS


def _parse_port(value: Any) -> Optional[int]:
    if value is None or value == "":
        return DEFAULT_PORT
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def resolve_database_config(
    settings: DatabaseSettings,
    secrets: Optional[SecretSource] = None,
) -> ResolvedDatabaseConfig:
    """Resolve connection targets.

    Args:
        settings: Raw database settings from the environment
        secrets: Secret store used when ``settings.secret_arn`` is set

    Returns:
        ResolvedDatabaseConfig with the primary target and optional fallback

    Raises:
        ConfigurationError: If host, port, user, password or database is missing
    """
    secret: dict[str, Any] = {}
    if settings.secret_arn:
        if secrets is None:
            raise ConfigurationError("DB_SECRET_ARN is set but no secret store is available")
        secret = await secrets.get_secret(settings.secret_arn) or {}
        logger.debug(f"Loaded database secret {settings.secret_arn}")

    proxy_endpoint = settings.proxy_endpoint
    cluster_endpoint = settings.cluster_endpoint or secret.get("host")
    host = proxy_endpoint or settings.host or secret.get("host")
    port = _parse_port(settings.port if settings.port is not None else secret.get("port"))
    user = settings.user or secret.get("username")
    password = settings.password or secret.get("password")
    database = settings.name or secret.get("dbname") or secret.get("database")

    if not host or port is None or not user or not password or not database:
        raise ConfigurationError("Database credentials are incomplete; unable to run migrations")

    primary = DatabaseTarget(
        host=host,
        port=port,
        user=user,
        password=password,
        database=database,
        ssl=determine_ssl(settings, host),
    )

    fallback = None
    if proxy_endpoint and cluster_endpoint and cluster_endpoint != proxy_endpoint:
        fallback = replace(primary, host=cluster_endpoint)

    return ResolvedDatabaseConfig(
        primary=primary,
        fallback=fallback,
        proxy_name=settings.proxy_name if proxy_endpoint else None,
        primary_endpoint_type="proxy" if proxy_endpoint else "cluster",
    )
