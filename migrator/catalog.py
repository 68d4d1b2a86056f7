"""Migration file discovery.

Migrations are plain ``.sql`` files named
``<YYYY-MM-DDTHHMM>__<service>__<description>.sql``. Lexicographic order
of the names is the apply order.
"""

import logging
from pathlib import Path
from typing import Iterable, Union

from .base import (
    MIGRATION_FILENAME_PATTERN,
    DuplicateMigrationError,
    InvalidMigrationNameError,
    MigrationFile,
)

logger = logging.getLogger(__name__)


def is_valid_migration_name(name: str) -> bool:
    return MIGRATION_FILENAME_PATTERN.match(name) is not None


def parse_migration_name(name: str) -> dict[str, str]:
    """Split a migration filename into its timestamp, service and description.

    Raises:
        InvalidMigrationNameError: If the name does not follow the grammar
    """
    match = MIGRATION_FILENAME_PATTERN.match(name)
    if not match:
        raise InvalidMigrationNameError(name)
    return match.groupdict()


def ensure_unique(migrations: Iterable[MigrationFile]) -> None:
    """Raise DuplicateMigrationError if two migrations share a name."""
    seen: set[str] = set()
    for migration in migrations:
        if migration.name in seen:
            raise DuplicateMigrationError(migration.name)
        seen.add(migration.name)


def discover_migrations(directory: Union[str, Path, None] = None) -> list[MigrationFile]:
    """Discover migration files in a directory.

    Args:
        directory: Directory to scan (defaults to the configured migrations dir)

    Returns:
        Migrations sorted by name; empty if the directory does not exist

    Raises:
        InvalidMigrationNameError: If a .sql file has an invalid name
        DuplicateMigrationError: If a name appears twice
    """
    if directory is None:
        from .config import get_config

        directory = get_config().migrations_dir

    path = Path(directory)
    if not path.is_dir():
        logger.info(f"Migrations directory not found: {path}")
        return []

    migrations: list[MigrationFile] = []
    for entry in sorted(path.iterdir(), key=lambda p: p.name):
        if not entry.is_file() or not entry.name.endswith(".sql"):
            continue
        if not is_valid_migration_name(entry.name):
            raise InvalidMigrationNameError(entry.name)
        migrations.append(MigrationFile.from_bytes(entry.name, entry.read_bytes()))
        logger.debug(f"Discovered migration: {entry.name}")

    ensure_unique(migrations)
    migrations.sort(key=lambda m: m.name)
    return migrations

