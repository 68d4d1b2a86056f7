"""Schema migrations for the namecard PostgreSQL database.

Discovers versioned SQL files contributed by each service, applies them
exactly once in name order under an advisory lock, and detects drift
between the applied-migration ledger and the files on disk.

Usage:
    from migrator import discover_migrations, apply_migrations

    migrations = discover_migrations("migrations")
    result = await apply_migrations(conn, migrations, version_tag="1.4.0")

    # Verify a live database
    from migrator import validate_migrations
    await validate_migrations(conn, migrations)
"""

from .base import (
    ChecksumMismatchError,
    ConfigurationError,
    DuplicateMigrationError,
    InvalidMigrationNameError,
    LedgerEntry,
    LockKey,
    LockUnavailableError,
    MigrationError,
    MigrationExecutionError,
    MigrationFile,
    RunResult,
)
from .catalog import discover_migrations
from .config import MigratorConfig, get_config, set_config
from .connection import (
    Connection,
    DatabaseConnectionError,
    ProxyNotReadyError,
    connect_with_retries,
    open_connection,
)
from .handler import MigrationHandler, handler
from .ledger import Ledger
from .resolver import ResolvedDatabaseConfig, resolve_database_config
from .runner import MigrationRunner, apply_migrations
from .validation import DriftReport, MigrationDriftError, validate_migrations

__all__ = [
    # Types
    "LedgerEntry",
    "LockKey",
    "MigrationFile",
    "RunResult",
    "DriftReport",
    "ResolvedDatabaseConfig",
    # Errors
    "MigrationError",
    "ConfigurationError",
    "InvalidMigrationNameError",
    "DuplicateMigrationError",
    "ChecksumMismatchError",
    "MigrationExecutionError",
    "LockUnavailableError",
    "DatabaseConnectionError",
    "ProxyNotReadyError",
    "MigrationDriftError",
    # Configuration
    "MigratorConfig",
    "get_config",
    "set_config",
    # Components
    "Connection",
    "Ledger",
    "MigrationRunner",
    "MigrationHandler",
    # Functions
    "discover_migrations",
    "resolve_database_config",
    "connect_with_retries",
    "open_connection",
    "apply_migrations",
    "validate_migrations",
    "handler",
]
