"""Migration runner.

Applies pending migrations in name order, each in its own transaction,
while holding the advisory lock. Already-applied migrations are skipped
after their checksum is verified against the ledger.
"""

import logging
import time
from typing import Any, Callable, Iterable, Optional

from .base import (
    ChecksumMismatchError,
    LockKey,
    MigrationExecutionError,
    MigrationFile,
    RunResult,
)
from .catalog import ensure_unique
from .ledger import Ledger

logger = logging.getLogger(__name__)


def default_batch_id(version_tag: Optional[str] = None) -> str:
    return f"{version_tag or 'unversioned'}-{int(time.time() * 1000)}"


class MigrationRunner:
    """Applies migration files against one connection.

    Usage:
        runner = MigrationRunner(conn, version_tag="1.4.0")
        result = await runner.apply(discover_migrations("migrations"))
    """

    def __init__(
        self,
        conn: Any,
        ledger_table: Optional[str] = None,
        lock_key: Optional[LockKey] = None,
        version_tag: Optional[str] = None,
        batch_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.conn = conn
        self.ledger = Ledger(conn, ledger_table, lock_key)
        self.version_tag = version_tag
        self.batch_id = batch_id or default_batch_id(version_tag)
        self._clock = clock

    async def apply(self, migrations: Iterable[MigrationFile]) -> RunResult:
        """Apply all pending migrations.

        Args:
            migrations: Discovered migration files, in any order

        Returns:
            RunResult listing applied and skipped names

        Raises:
            DuplicateMigrationError: Before any SQL, if names repeat
            ChecksumMismatchError: If an applied file was modified
            MigrationExecutionError: If a migration fails (it is rolled back)
        """
        ordered = sorted(migrations, key=lambda m: m.name)
        result = RunResult(batch_id=self.batch_id)
        ensure_unique(ordered)

        await self.ledger.ensure()
        if not ordered:
            logger.info("No migration files found; nothing to apply")
            return result

        await self.ledger.acquire_lock()
        try:
            applied = await self.ledger.load()
            for migration in ordered:
                existing = applied.get(migration.name)
                if existing is not None:
                    if existing != migration.checksum:
                        raise ChecksumMismatchError(migration.name, existing, migration.checksum)
                    result.skipped.append(migration.name)
                    continue

                await self._apply_one(migration)
                result.applied.append(migration.name)
        finally:
            await self.ledger.release_lock()

        logger.info(
            f"Migration batch {self.batch_id} complete: "
            f"{len(result.applied)} applied, {len(result.skipped)} skipped"
        )
        return result

    async def _apply_one(self, migration: MigrationFile) -> None:
        logger.info(f"Applying migration {migration.name}")
        try:
            async with self.conn.transaction():
                start = self._clock()
                await self.conn.execute(migration.sql)
                execution_ms = int((self._clock() - start) * 1000)
                await self.ledger.record(
                    migration.name,
                    migration.checksum,
                    execution_ms,
                    self.batch_id,
                    self.version_tag,
                )
        except Exception as e:
            logger.error(f"Migration {migration.name} failed: {e}")
            raise MigrationExecutionError(migration.name, e) from e
        logger.info(f"Applied migration {migration.name} ({execution_ms}ms)")


# Convenience functions


async def apply_migrations(
    conn: Any, migrations: Iterable[MigrationFile], **options: Any
) -> RunResult:
    """Apply migrations with a fresh runner."""
    return await MigrationRunner(conn, **options).apply(migrations)
