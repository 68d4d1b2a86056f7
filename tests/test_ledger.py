"""Tests for the ledger table and advisory lock."""

import pytest

from migrator.base import LockKey
from migrator.ledger import Ledger, normalize_ledger_table, quote_ident

from tests.helpers import FakeConnection, normalize


class TestIdentifiers:
    """Tests for identifier quoting."""

    def test_quote_ident(self):
        assert quote_ident("schema_migrations") == '"schema_migrations"'

    def test_quote_ident_escapes_quotes(self):
        assert quote_ident('we"ird') == '"we""ird"'

    def test_unqualified_table_goes_to_public(self):
        assert normalize_ledger_table("schema_migrations") == '"public"."schema_migrations"'

    def test_qualified_table(self):
        assert normalize_ledger_table("ops.ledger") == '"ops"."ledger"'


class TestLedger:
    """Tests for Ledger operations."""

    @pytest.mark.asyncio
    async def test_ensure_creates_table(self):
        conn = FakeConnection()

        await Ledger(conn).ensure()

        statement = conn.statements()[0]
        assert statement.startswith('create table if not exists "public"."schema_migrations"')
        for column in (
            "name text primary key",
            "checksum text not null",
            "applied_at timestamptz not null default now()",
            "execution_ms integer not null",
            "batch_id text",
            "app_version text",
        ):
            assert column in statement

    @pytest.mark.asyncio
    async def test_lock_uses_default_key(self):
        conn = FakeConnection()
        ledger = Ledger(conn)

        await ledger.acquire_lock()
        await ledger.release_lock()

        assert conn.query_log[0] == ("select pg_advisory_lock($1, $2)", (1867, 2401))
        assert conn.query_log[1] == ("select pg_advisory_unlock($1, $2)", (1867, 2401))
        assert conn.lock_calls == 1
        assert conn.unlock_calls == 1

    @pytest.mark.asyncio
    async def test_custom_lock_key(self):
        conn = FakeConnection()

        await Ledger(conn, lock_key=LockKey(7, 9)).acquire_lock()

        assert conn.query_log[0][1] == (7, 9)

    @pytest.mark.asyncio
    async def test_try_acquire(self):
        assert await Ledger(FakeConnection()).try_acquire_lock() is True
        assert await Ledger(FakeConnection(try_lock_succeeds=False)).try_acquire_lock() is False

    @pytest.mark.asyncio
    async def test_release_failure_is_logged_not_raised(self, caplog):
        conn = FakeConnection(fail_unlock=True)

        await Ledger(conn).release_lock()

        assert conn.unlock_calls == 1
        assert "Failed to release migration advisory lock" in caplog.text

    @pytest.mark.asyncio
    async def test_record_and_load(self):
        conn = FakeConnection()
        ledger = Ledger(conn, table="ops.ledger")

        await ledger.record("2024-01-01T1200__auth__init.sql", "abc", 12, "b-1", "1.0.0")

        insert = normalize(conn.query_log[0][0])
        assert insert.startswith('insert into "ops"."ledger" (name, checksum, execution_ms, batch_id, app_version)')
        assert await ledger.load() == {"2024-01-01T1200__auth__init.sql": "abc"}

    @pytest.mark.asyncio
    async def test_entries(self):
        conn = FakeConnection(
            ledger=[
                {"name": "b.sql", "checksum": "2", "execution_ms": 5, "batch_id": "x"},
                {"name": "a.sql", "checksum": "1"},
            ]
        )

        entries = await Ledger(conn).entries()

        assert [e.name for e in entries] == ["a.sql", "b.sql"]
        assert entries[1].execution_ms == 5
        assert entries[1].batch_id == "x"
