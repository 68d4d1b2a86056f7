"""Pytest fixtures for migrator tests."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from migrator.config import (
    ConnectSettings,
    DatabaseSettings,
    MigratorConfig,
    ProxyWaitSettings,
    set_config,
)

from tests.helpers import THREE_FILES, build_migrations


@pytest.fixture(autouse=True)
def reset_global_config():
    """Ensure no test leaks a global configuration."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def three_migrations():
    """Three migrations from three services, in shuffled order."""
    return build_migrations([THREE_FILES[2], THREE_FILES[0], THREE_FILES[1]])


@pytest.fixture
def migrations_dir(tmp_path) -> Path:
    """A migrations directory with two valid files."""
    directory = tmp_path / "migrations"
    directory.mkdir()
    (directory / "2024-02-15T1530__cards__create-table.sql").write_text(
        "create table cards (id uuid primary key);\n"
    )
    (directory / "2024-01-01T1200__auth__init.sql").write_text(
        "create table users (id uuid primary key);\n"
    )
    return directory


@pytest.fixture
def services_dir(tmp_path) -> Path:
    """A services tree with per-service migrations directories."""
    root = tmp_path / "services"
    (root / "auth" / "migrations").mkdir(parents=True)
    (root / "cards" / "migrations").mkdir(parents=True)
    (root / "web").mkdir(parents=True)
    (root / "auth" / "migrations" / "2024-01-01T1200__auth__init.sql").write_text(
        "create table users (id uuid primary key);\n"
    )
    (root / "cards" / "migrations" / "2024-02-15T1530__cards__create-table.sql").write_text(
        "create table cards (id uuid primary key);\n"
    )
    (root / "cards" / "migrations" / "README.md").write_text("notes\n")
    return root


@pytest.fixture
def migrator_config(tmp_path) -> MigratorConfig:
    """Configuration pointing at a local database with fast retries."""
    return MigratorConfig(
        migrations_dir=str(tmp_path / "migrations"),
        database=DatabaseSettings(
            host="localhost",
            port="5432",
            user="namecard_user",
            password="namecard_password",
            name="namecard_dev",
        ),
        connect=ConnectSettings(attempts=3, base_delay=0.01, timeout=1.0),
        proxy_wait=ProxyWaitSettings(attempts=3, interval=0.01),
    )


@pytest.fixture
def mock_secrets():
    """Secret store returning a complete credential payload."""
    secrets = MagicMock()
    secrets.get_secret = AsyncMock(
        return_value={
            "username": "secret_user",
            "password": "secret_pass",
            "host": "cluster.example.internal",
            "port": 5432,
            "dbname": "namecard",
        }
    )
    return secrets


@pytest.fixture
def mock_alarms():
    """Alarm publisher that records payloads."""
    alarms = MagicMock()
    alarms.publish = AsyncMock(return_value=True)
    return alarms


@pytest.fixture
def no_sleep():
    """Awaitable sleep replacement that records requested delays."""
    return AsyncMock(return_value=None)
