"""PostgreSQL connection establishment.

Wraps asyncpg connections and implements the retry policy used when the
database (or the proxy in front of it) is still warming up:
exponential backoff with jitter, an optional wait for proxy backends to
report healthy, and a one-way fallback from the proxy to the cluster
endpoint.
"""

import asyncio
import logging
import random
import ssl
from typing import Any, Awaitable, Callable, Optional, Protocol

import asyncpg

from .base import MigrationError
from .config import ConnectSettings, MigratorConfig, ProxyWaitSettings
from .resolver import DatabaseTarget, ResolvedDatabaseConfig

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]

FALLBACK_LABEL = "cluster-fallback"


class DatabaseConnectionError(MigrationError):
    """All connection attempts to an endpoint failed."""

    def __init__(self, label: str, cause: Optional[BaseException] = None):
        self.label = label
        self.cause = cause
        message = f"Unable to establish database connection via {label}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ProxyNotReadyError(MigrationError):
    """Proxy backends did not report healthy within the wait budget."""

    pass


class ProxyHealth(Protocol):
    async def target_states(self, proxy_name: str) -> list[str]: ...


def insecure_ssl_context() -> ssl.SSLContext:
    """SSL context that encrypts without verifying the server certificate."""
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


class Connection:
    """An open database session.

    Thin wrapper over an asyncpg connection that remembers which
    endpoint it was opened against.
    """

    def __init__(self, raw: Any, label: str):
        self._raw = raw
        self.label = label

    async def execute(self, sql: str, *args: Any) -> Any:
        return await self._raw.execute(sql, *args)

    async def fetch(self, sql: str, *args: Any) -> list[Any]:
        return list(await self._raw.fetch(sql, *args))

    async def fetchval(self, sql: str, *args: Any) -> Any:
        return await self._raw.fetchval(sql, *args)

    def transaction(self) -> Any:
        """Return an async context manager wrapping one transaction."""
        return self._raw.transaction()

    async def close(self) -> None:
        await self._raw.close()


def backoff_delay(attempt: int, settings: ConnectSettings) -> float:
    """Delay before the next attempt, without jitter."""
    return float(min(settings.max_delay, settings.base_delay * (2 ** (attempt - 1))))


async def _close_quietly(raw: Any, label: str) -> None:
    try:
        await raw.close()
    except Exception as e:
        logger.debug(f"Ignoring close error on failed {label} connection: {e}")


async def connect_with_retries(
    target: DatabaseTarget,
    label: str,
    settings: ConnectSettings,
    connector: Optional[Connector] = None,
    sleep: Sleeper = asyncio.sleep,
) -> Connection:
    """Open a connection, retrying with exponential backoff.

    Args:
        target: Endpoint and credentials
        label: Endpoint label for logs and errors (proxy, cluster, cluster-fallback)
        settings: Retry policy
        connector: Coroutine factory with ``asyncpg.connect``'s signature
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        Connected Connection

    Raises:
        DatabaseConnectionError: After the final failed attempt
    """
    connect = connector or asyncpg.connect
    last_error: Optional[BaseException] = None

    for attempt in range(1, settings.attempts + 1):
        raw = None
        try:
            raw = await asyncio.wait_for(
                connect(
                    host=target.host,
                    port=target.port,
                    user=target.user,
                    password=target.password,
                    database=target.database,
                    ssl=insecure_ssl_context() if target.ssl else False,
                    timeout=settings.timeout,
                ),
                timeout=settings.timeout,
            )
            await raw.fetchval("select 1")
            logger.info(f"Connected to database via {label} (attempt {attempt})")
            return Connection(raw, label)
        except Exception as e:
            last_error = e
            if raw is not None:
                await _close_quietly(raw, label)

            if attempt >= settings.attempts:
                break

            delay = backoff_delay(attempt, settings)
            logger.warning(
                f"Failed to connect to database via {label}, retrying "
                f"(attempt {attempt}/{settings.attempts}, delay {delay:.1f}s): {e}"
            )
            await sleep(delay + random.random())

    raise DatabaseConnectionError(label, last_error) from last_error


async def wait_for_proxy_targets(
    proxy_name: str,
    health: ProxyHealth,
    settings: ProxyWaitSettings,
    sleep: Sleeper = asyncio.sleep,
) -> None:
    """Poll until every proxy backend target reports ``available``.

    Raises:
        ProxyNotReadyError: If targets are not healthy within the wait budget
    """
    for attempt in range(1, settings.attempts + 1):
        try:
            states = await health.target_states(proxy_name)
            if states and all(state.lower() == "available" for state in states):
                logger.info(f"DB proxy targets are healthy: {proxy_name} (attempt {attempt})")
                return
            logger.warning(
                f"DB proxy targets not yet available: {proxy_name} "
                f"(attempt {attempt}, states {states or ['none']})"
            )
        except Exception as e:
            logger.warning(f"Failed to describe DB proxy targets for {proxy_name}: {e}")

        await sleep(settings.interval)

    raise ProxyNotReadyError(f"DB proxy targets for {proxy_name} did not become available in time")


async def open_connection(
    resolved: ResolvedDatabaseConfig,
    config: MigratorConfig,
    health: Optional[ProxyHealth] = None,
    connector: Optional[Connector] = None,
    sleep: Sleeper = asyncio.sleep,
) -> Connection:
    """Connect to the primary target, falling back to the cluster once.

    A proxy health timeout is logged and the connection attempt proceeds.
    Once the fallback is chosen the primary is not retried.
    """
    if resolved.proxy_name and health is not None:
        try:
            await wait_for_proxy_targets(resolved.proxy_name, health, config.proxy_wait, sleep)
        except ProxyNotReadyError as e:
            logger.warning(f"{e}; attempting connection anyway")

    label = resolved.primary_endpoint_type
    logger.info(f"Connecting to {resolved.primary.describe()} via {label}")
    try:
        return await connect_with_retries(
            resolved.primary, label, config.connect, connector, sleep
        )
    except DatabaseConnectionError as e:
        if resolved.fallback is None:
            raise
        logger.warning(f"{e}; falling back to cluster endpoint {resolved.fallback.host}")

    return await connect_with_retries(
        resolved.fallback, FALLBACK_LABEL, config.connect, connector, sleep
    )
