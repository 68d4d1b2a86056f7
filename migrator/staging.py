"""Stage per-service migrations into one directory.

Each service keeps its migrations under ``services/<service>/migrations``.
The runner consumes a single flat directory, so local runs copy every
service's files into a temporary root first.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Iterator, Union

from .base import DuplicateMigrationError

logger = logging.getLogger(__name__)

STAGING_PREFIX = "namecard-migrations-"


def iter_service_migrations(services_dir: Union[str, Path]) -> Iterator[tuple[str, Path]]:
    """Yield ``(service, path)`` for every .sql file under each service's migrations dir."""
    root = Path(services_dir)
    for service_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        migrations_dir = service_dir / "migrations"
        if not migrations_dir.is_dir():
            continue
        for path in sorted(migrations_dir.iterdir()):
            if path.is_file() and path.name.endswith(".sql"):
                yield service_dir.name, path


class StagedMigrations:
    """A temporary directory holding copied migration files."""

    def __init__(self, path: Path):
        self.path = path

    def cleanup(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)

    def __enter__(self) -> "StagedMigrations":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()


def stage_migrations(services_dir: Union[str, Path]) -> StagedMigrations:
    """Copy every service's migration files into a fresh temp directory.

    Args:
        services_dir: Root containing one directory per service

    Returns:
        StagedMigrations; call ``cleanup()`` or use it as a context manager

    Raises:
        FileNotFoundError: If services_dir does not exist
        DuplicateMigrationError: If two services ship the same filename
    """
    root = Path(services_dir)
    if not root.is_dir():
        raise FileNotFoundError(f"Services directory not found: {root}")

    staged = StagedMigrations(Path(tempfile.mkdtemp(prefix=STAGING_PREFIX)))
    count = 0
    for service, source in iter_service_migrations(root):
        target = staged.path / source.name
        if target.exists():
            staged.cleanup()
            raise DuplicateMigrationError(source.name)
        shutil.copyfile(source, target)
        count += 1
        logger.debug(f"Staged {service}/{source.name}")

    logger.info(f"Staged {count} migration file(s) into {staged.path}")
    return staged
