"""Core types for the migration system.

Defines the shared abstractions:
- MigrationFile: An immutable, discovered SQL change file
- LedgerEntry: A row of the applied-migration ledger
- LockKey: The advisory lock identity used to serialize runs
- RunResult: Outcome of one apply invocation
- MigrationError and its subclasses: the error taxonomy
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

MIGRATION_FILENAME_PATTERN = re.compile(
    r"^(?P<timestamp>\d{4}-\d{2}-\d{2}T\d{4})__"
    r"(?P<service>[a-z0-9-]+)__"
    r"(?P<description>[a-z0-9-]+)\.sql$"
)


def compute_checksum(content: bytes) -> str:
    """Compute the SHA-256 hex digest of raw file bytes."""
    return hashlib.sha256(content).hexdigest()


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class ConfigurationError(MigrationError):
    """Invalid inputs or environment; fatal before any database work."""

    pass


class InvalidMigrationNameError(ConfigurationError):
    """A .sql file does not follow the migration naming grammar."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Invalid migration filename: {name}. "
            "Expected <YYYY-MM-DDTHHMM>__<service>__<description>.sql"
        )


class DuplicateMigrationError(ConfigurationError):
    """Two migration files share the same name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate migration name detected: {name}")


class ChecksumMismatchError(MigrationError):
    """An applied migration's file content has changed since it was applied."""

    def __init__(self, name: str, expected: str, actual: str):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for migration {name}: ledger has {expected}, "
            f"file has {actual}. Create a follow-up migration instead of "
            "mutating past files."
        )


class MigrationExecutionError(MigrationError):
    """A migration's SQL or its ledger insert failed and was rolled back."""

    def __init__(self, migration: str, cause: BaseException):
        self.migration = migration
        self.cause = cause
        super().__init__(f"Failed to apply migration {migration}: {cause}")


class LockUnavailableError(MigrationError):
    """The advisory lock is held by another session."""

    pass


@dataclass(frozen=True)
class MigrationFile:
    """A discovered migration file.

    Attributes:
        name: File name, also the ledger primary key
        sql: Full SQL text, executed verbatim
        checksum: SHA-256 hex digest of the raw file bytes
    """

    name: str
    sql: str
    checksum: str

    @classmethod
    def from_bytes(cls, name: str, content: bytes) -> "MigrationFile":
        try:
            sql = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ConfigurationError(f"Migration {name} is not valid UTF-8") from e
        return cls(name=name, sql=sql, checksum=compute_checksum(content))

    def _part(self, group: str) -> Optional[str]:
        match = MIGRATION_FILENAME_PATTERN.match(self.name)
        return match.group(group) if match else None

    @property
    def timestamp(self) -> Optional[str]:
        return self._part("timestamp")

    @property
    def service(self) -> Optional[str]:
        return self._part("service")

    @property
    def description(self) -> Optional[str]:
        return self._part("description")


@dataclass
class LedgerEntry:
    """Record of a migration applied to the database."""

    name: str
    checksum: str
    applied_at: Optional[datetime] = None
    execution_ms: int = 0
    batch_id: Optional[str] = None
    app_version: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "LedgerEntry":
        return cls(
            name=row["name"],
            checksum=row["checksum"],
            applied_at=row["applied_at"],
            execution_ms=row["execution_ms"],
            batch_id=row["batch_id"],
            app_version=row["app_version"],
        )


@dataclass(frozen=True)
class LockKey:
    """Two-integer key of a session-scoped advisory lock."""

    partition: int
    token: int


DEFAULT_LOCK_KEY = LockKey(partition=1867, token=2401)
DEFAULT_LEDGER_TABLE = "public.schema_migrations"


@dataclass
class RunResult:
    """Result of an apply invocation."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    paused: bool = False
    batch_id: Optional[str] = None
