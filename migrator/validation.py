"""Ledger drift detection.

Compares the applied-migration ledger with the migration files on disk
without writing anything. Runs under a non-blocking attempt on the same
advisory lock the runner uses so it never observes a half-applied batch.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping, Optional

from .base import LockKey, LockUnavailableError, MigrationError, MigrationFile
from .ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass
class ChecksumMismatch:
    """expected is the local file checksum, actual is the ledger value."""

    name: str
    expected: str
    actual: str


@dataclass
class UnexpectedMigration:
    name: str
    checksum: str


@dataclass
class DriftReport:
    """Differences between the ledger and local migration files.

    Attributes:
        missing: Local files that were never applied
        checksum_mismatches: Applied files whose content changed
        unexpected: Ledger entries with no local file
    """

    missing: list[str] = field(default_factory=list)
    checksum_mismatches: list[ChecksumMismatch] = field(default_factory=list)
    unexpected: list[UnexpectedMigration] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(self.missing or self.checksum_mismatches or self.unexpected)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MigrationDriftError(MigrationError):
    """The ledger does not match the local migration files."""

    def __init__(self, report: DriftReport):
        self.report = report
        super().__init__(
            "Migration drift detected: "
            f"{len(report.missing)} missing, "
            f"{len(report.checksum_mismatches)} checksum mismatch(es), "
            f"{len(report.unexpected)} unexpected"
        )


def compute_drift(ledger: Mapping[str, str], migrations: Iterable[MigrationFile]) -> DriftReport:
    """Compare ``{name: checksum}`` ledger state with local files."""
    report = DriftReport()
    local = {m.name: m.checksum for m in sorted(migrations, key=lambda m: m.name)}

    for name, checksum in local.items():
        applied = ledger.get(name)
        if applied is None:
            report.missing.append(name)
        elif applied != checksum:
            report.checksum_mismatches.append(
                ChecksumMismatch(name=name, expected=checksum, actual=applied)
            )

    for name in sorted(ledger):
        if name not in local:
            report.unexpected.append(UnexpectedMigration(name=name, checksum=ledger[name]))

    return report


async def validate_migrations(
    conn: Any,
    migrations: Iterable[MigrationFile],
    ledger_table: Optional[str] = None,
    lock_key: Optional[LockKey] = None,
) -> DriftReport:
    """Verify that the ledger matches the local migration files.

    Returns:
        An empty DriftReport when ledger and files agree

    Raises:
        LockUnavailableError: If a migration run holds the advisory lock
        MigrationDriftError: If any drift is found
    """
    ledger = Ledger(conn, ledger_table, lock_key)
    await ledger.ensure()

    if not await ledger.try_acquire_lock():
        raise LockUnavailableError(
            "Unable to acquire advisory lock for validation. "
            "Another migration run may be in progress."
        )

    try:
        report = compute_drift(await ledger.load(), migrations)
    finally:
        await ledger.release_lock()

    if report.has_drift:
        error = MigrationDriftError(report)
        logger.warning(str(error))
        raise error

    logger.info("Migration ledger matches local files")
    return report
