"""CLI for schema migrations.

Usage:
    python -m migrator migrate --services-dir services
    python -m migrator migrate --dir migrations --version 1.4.0
    python -m migrator validate --services-dir services
    python -m migrator status --dir migrations
    python -m migrator lint --services-dir services
    python -m migrator create cards add-card-tags
"""

import argparse
import asyncio
import logging
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Iterator, Mapping, Optional

import asyncpg
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from .base import ConfigurationError, MigrationError, MigrationFile
from .catalog import discover_migrations
from .config import ConnectSettings, MigratorConfig
from .connection import Connection, connect_with_retries
from .handler import MigrationHandler
from .ledger import Ledger
from .lint import lint_services
from .resolver import resolve_database_config
from .staging import StagedMigrations, stage_migrations
from .validation import DriftReport, MigrationDriftError, compute_drift, validate_migrations

logger = logging.getLogger(__name__)
console = Console()

LOCAL_DEFAULTS = {
    "DB_HOST": "localhost",
    "DB_PORT": "5432",
    "DB_USER": "namecard_user",
    "DB_PASSWORD": "namecard_password",
    "DB_NAME": "namecard_dev",
    "DB_SSL": "false",
}

SEGMENT_PATTERN = re.compile(r"^[a-z0-9-]+$")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def local_environment(base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Environment for developer runs against the local database.

    Unset connection settings default to the docker-compose database and
    any secret-store reference is dropped.
    """
    env = dict(os.environ if base is None else base)
    for key, value in LOCAL_DEFAULTS.items():
        env.setdefault(key, value)
    env.pop("DB_SECRET_ARN", None)
    return env


class MigrationSource:
    """Resolves the migrations directory from CLI arguments."""

    def __init__(self, args: argparse.Namespace, config: MigratorConfig):
        self.services_dir = getattr(args, "services_dir", None)
        self.directory = getattr(args, "dir", None) or config.migrations_dir
        self._staged: Optional[StagedMigrations] = None

    def __enter__(self) -> str:
        if self.services_dir:
            self._staged = stage_migrations(self.services_dir)
            return str(self._staged.path)
        return self.directory

    def __exit__(self, *exc_info: object) -> None:
        if self._staged is not None:
            self._staged.cleanup()


async def open_local_connection(config: MigratorConfig) -> Connection:
    """Connect to the primary target with a single attempt."""
    resolved = await resolve_database_config(config.database)
    settings = ConnectSettings(attempts=1, timeout=config.connect.timeout)
    return await connect_with_retries(
        resolved.primary, resolved.primary_endpoint_type, settings
    )


def render_drift(report: DriftReport) -> None:
    if report.missing:
        console.print("  Missing migrations (present locally, absent in database):")
        for name in report.missing:
            console.print(f"    - {name}", markup=False)
    if report.checksum_mismatches:
        console.print("  Checksum mismatches (database checksum differs from local file):")
        for mismatch in report.checksum_mismatches:
            console.print(
                f"    - {mismatch.name} (expected {mismatch.expected}, actual {mismatch.actual})",
                markup=False,
            )
    if report.unexpected:
        console.print("  Unexpected migrations recorded in database (no matching local file):")
        for unexpected in report.unexpected:
            console.print(f"    - {unexpected.name}", markup=False)


def _status_rows(
    ledger: Mapping[str, str], migrations: list[MigrationFile]
) -> Iterator[tuple[str, str]]:
    report = compute_drift(ledger, migrations)
    mismatched = {m.name for m in report.checksum_mismatches}
    missing = set(report.missing)
    for migration in migrations:
        if migration.name in mismatched:
            yield "[!]", migration.name
        elif migration.name in missing:
            yield "[ ]", migration.name
        else:
            yield "[x]", migration.name
    for unexpected in report.unexpected:
        yield "[?]", unexpected.name


async def cmd_migrate(args: argparse.Namespace) -> int:
    """Apply pending migrations to the local database."""
    env = local_environment()
    env.setdefault("MIGRATION_BATCH_ID", f"local-{int(time.time() * 1000)}")
    config = MigratorConfig.from_env(env)
    version = args.version or env.get("MIGRATIONS_VERSION") or "local"

    with MigrationSource(args, config) as directory:
        config.migrations_dir = directory
        handler = MigrationHandler(config=config, env=env)
        try:
            response = await handler.handle(
                {"RequestType": "Create", "ResourceProperties": {"version": version}}
            )
        except MigrationError as e:
            console.print(f"[red]Local migrations failed:[/red] {escape(str(e))}")
            return 1

    data = response.get("Data", {})
    if data.get("status") == "paused":
        console.print("[yellow]Migrations are paused; nothing applied[/yellow]")
        return 0

    console.print(
        f"[green]Local migrations applied successfully[/green] "
        f"(applied {data.get('applied', 0)}, skipped {data.get('skipped', 0)})"
    )
    return 0


async def cmd_validate(args: argparse.Namespace) -> int:
    """Check the database ledger against local migration files."""
    config = MigratorConfig.from_env(local_environment())
    conn: Optional[Connection] = None

    with MigrationSource(args, config) as directory:
        try:
            migrations = discover_migrations(directory)
            conn = await open_local_connection(config)
            await validate_migrations(
                conn, migrations, config.ledger.table, config.ledger.lock_key
            )
        except MigrationDriftError as e:
            console.print(
                "[red]Schema drift detected between database ledger and local migrations.[/red]"
            )
            render_drift(e.report)
            return 1
        except MigrationError as e:
            console.print(f"[red]Migration validation failed:[/red] {escape(str(e))}")
            return 1
        finally:
            if conn is not None:
                try:
                    await conn.close()
                except Exception as e:
                    logger.error(f"Failed to close validation connection: {e}")

    console.print("[green]Schema drift check passed.[/green]")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show applied and pending migrations."""
    config = MigratorConfig.from_env(local_environment())

    with MigrationSource(args, config) as directory:
        try:
            migrations = discover_migrations(directory)
            conn = await open_local_connection(config)
        except MigrationError as e:
            console.print(f"[red]Unable to read migration status:[/red] {escape(str(e))}")
            return 1

        try:
            ledger = await Ledger(conn, config.ledger.table, config.ledger.lock_key).load()
        except asyncpg.exceptions.UndefinedTableError:
            ledger = {}
        finally:
            await conn.close()

    if not migrations and not ledger:
        console.print("No migrations found")
        return 0

    table = Table(title="Migration status")
    table.add_column("State")
    table.add_column("Migration")
    for icon, name in _status_rows(ledger, migrations):
        table.add_row(Text(icon), Text(name))
    console.print(table)

    pending = sum(1 for m in migrations if m.name not in ledger)
    console.print(
        f"Total: {len(migrations)} | Applied: {len(migrations) - pending} | Pending: {pending}"
    )
    return 0


def cmd_lint(args: argparse.Namespace) -> int:
    """Lint every service's migrations."""
    issues = lint_services(args.services_dir)
    if issues:
        console.print("[red]Migration lint failed:[/red]")
        for issue in issues:
            console.print(f" - {issue}", markup=False)
        return 1

    console.print("[green]Migration lint passed.[/green]")
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    """Create an empty, correctly named migration file."""
    service = args.service.lower()
    description = re.sub(r"[\s_]+", "-", args.description.strip().lower())
    if not SEGMENT_PATTERN.match(service) or not SEGMENT_PATTERN.match(description):
        console.print(
            "Error: service and description may only contain lowercase letters, numbers, or dashes"
        )
        return 1

    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H%M")
    filename = f"{timestamp}__{service}__{description}.sql"
    migrations_dir = Path(args.services_dir) / service / "migrations"
    migrations_dir.mkdir(parents=True, exist_ok=True)

    filepath = migrations_dir / filename
    if filepath.exists():
        console.print(f"Error: Migration file already exists: {filepath}", markup=False)
        return 1

    template = dedent(f"""
        -- Migration: {description.replace("-", " ")}
        -- Service: {service}
        --
        -- Runs once, inside a transaction. Never edit this file after it
        -- has been applied; add a follow-up migration instead.
    """).strip()

    filepath.write_text(template + "\n", encoding="utf-8")
    console.print(f"Created migration: {filepath}", markup=False)
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description="Schema migrations for the namecard database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=dedent("""
            Examples:
              # Apply every service's migrations to the local database
              python -m migrator migrate --services-dir services

              # Check the ledger for drift
              python -m migrator validate --services-dir services

              # Lint migrations before merging
              python -m migrator lint

              # Create a new migration
              python -m migrator create cards add-card-tags
        """),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_source_arguments(sub: argparse.ArgumentParser) -> None:
        source = sub.add_mutually_exclusive_group()
        source.add_argument(
            "--services-dir",
            help="Stage migrations from <services-dir>/<service>/migrations",
        )
        source.add_argument(
            "--dir",
            help="Flat migrations directory (default: MIGRATIONS_ROOT or ./migrations)",
        )

    migrate_parser = subparsers.add_parser("migrate", help="Apply pending migrations")
    add_source_arguments(migrate_parser)
    migrate_parser.add_argument(
        "--version",
        help="Version tag recorded in the ledger (default: MIGRATIONS_VERSION or 'local')",
    )

    validate_parser = subparsers.add_parser("validate", help="Detect ledger drift")
    add_source_arguments(validate_parser)

    status_parser = subparsers.add_parser("status", help="Show migration status")
    add_source_arguments(status_parser)

    lint_parser = subparsers.add_parser("lint", help="Lint service migrations")
    lint_parser.add_argument("--services-dir", default="services", help="Services root")

    create_parser_ = subparsers.add_parser("create", help="Create a new migration file")
    create_parser_.add_argument("service", help="Owning service (directory name)")
    create_parser_.add_argument("description", help="Short description, e.g. add-card-tags")
    create_parser_.add_argument("--services-dir", default="services", help="Services root")

    return parser


async def async_main(args: argparse.Namespace) -> int:
    """Async main entry point."""
    if args.command == "lint":
        return cmd_lint(args)
    if args.command == "create":
        return cmd_create(args)

    commands = {
        "migrate": cmd_migrate,
        "validate": cmd_validate,
        "status": cmd_status,
    }
    try:
        return await commands[args.command](args)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        return 1


def main() -> None:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose)

    try:
        exit_code = asyncio.run(async_main(args))
    except KeyboardInterrupt:
        print("\nInterrupted")
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
