"""Applied-migration ledger and advisory lock.

The ledger is an append-only table keyed by migration name. Writers and
validators serialize through one session-scoped PostgreSQL advisory lock.
"""

import logging
from typing import Any, Optional

from .base import DEFAULT_LEDGER_TABLE, DEFAULT_LOCK_KEY, LedgerEntry, LockKey

logger = logging.getLogger(__name__)


def quote_ident(ident: str) -> str:
    """Double-quote an SQL identifier, escaping embedded quotes."""
    return '"' + ident.replace('"', '""') + '"'


def normalize_ledger_table(name: str) -> str:
    """Quote a possibly schema-qualified table name.

    Unqualified names are placed in the ``public`` schema.
    """
    parts = [part for part in name.split(".") if part]
    if len(parts) == 1:
        parts = ["public", parts[0]]
    return ".".join(quote_ident(part) for part in parts)


class Ledger:
    """Ledger table and lock operations on one connection."""

    def __init__(
        self,
        conn: Any,
        table: Optional[str] = None,
        lock_key: Optional[LockKey] = None,
    ):
        self.conn = conn
        self.table = normalize_ledger_table(table or DEFAULT_LEDGER_TABLE)
        self.lock_key = lock_key or DEFAULT_LOCK_KEY

    async def ensure(self) -> None:
        """Create the ledger table if it does not exist."""
        await self.conn.execute(
            f"create table if not exists {self.table} ("
            "name text primary key, "
            "checksum text not null, "
            "applied_at timestamptz not null default now(), "
            "execution_ms integer not null, "
            "batch_id text, "
            "app_version text)"
        )

    async def acquire_lock(self) -> None:
        """Block until the advisory lock is held by this session."""
        logger.debug(f"Acquiring advisory lock {self.lock_key}")
        await self.conn.execute(
            "select pg_advisory_lock($1, $2)", self.lock_key.partition, self.lock_key.token
        )

    async def try_acquire_lock(self) -> bool:
        """Take the advisory lock if it is free.

        Returns:
            True if acquired, False if another session holds it
        """
        acquired = await self.conn.fetchval(
            "select pg_try_advisory_lock($1, $2)", self.lock_key.partition, self.lock_key.token
        )
        return bool(acquired)

    async def release_lock(self) -> None:
        """Release the advisory lock. Failures are logged, not raised."""
        try:
            await self.conn.execute(
                "select pg_advisory_unlock($1, $2)",
                self.lock_key.partition,
                self.lock_key.token,
            )
        except Exception as e:
            logger.error(f"Failed to release migration advisory lock: {e}")

    async def load(self) -> dict[str, str]:
        """Return ``{name: checksum}`` for every applied migration."""
        rows = await self.conn.fetch(f"select name, checksum from {self.table}")
        return {row["name"]: row["checksum"] for row in rows}

    async def entries(self) -> list[LedgerEntry]:
        rows = await self.conn.fetch(
            f"select name, checksum, applied_at, execution_ms, batch_id, app_version "
            f"from {self.table} order by name"
        )
        return [LedgerEntry.from_row(row) for row in rows]

    async def record(
        self,
        name: str,
        checksum: str,
        execution_ms: int,
        batch_id: Optional[str],
        app_version: Optional[str],
    ) -> None:
        await self.conn.execute(
            f"insert into {self.table} (name, checksum, execution_ms, batch_id, app_version) "
            "values ($1, $2, $3, $4, $5)",
            name,
            checksum,
            execution_ms,
            batch_id,
            app_version,
        )
