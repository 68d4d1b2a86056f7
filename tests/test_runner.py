"""Tests for the migration runner."""

from itertools import count

import pytest

from migrator.base import (
    ChecksumMismatchError,
    DuplicateMigrationError,
    LockKey,
    MigrationExecutionError,
    MigrationFile,
)
from migrator.runner import MigrationRunner, apply_migrations, default_batch_id

from tests.helpers import THREE_FILES, FakeConnection, build_migrations


def fake_clock(step=0.25):
    ticks = count()
    return lambda: next(ticks) * step


class TestApplyOrdering:
    """Tests for ordering and recording."""

    @pytest.mark.asyncio
    async def test_applies_in_name_order(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations)

        result = await MigrationRunner(conn).apply(three_migrations)

        assert result.applied == THREE_FILES
        assert result.skipped == []
        assert result.paused is False
        assert conn.executed_migrations == THREE_FILES
        assert conn.inserted_migrations == THREE_FILES
        assert "rollback" not in conn.statements()
        assert conn.statements().count("commit") == 3

    @pytest.mark.asyncio
    async def test_order_independent_of_input_order(self, three_migrations):
        first = FakeConnection.for_migrations(three_migrations)
        second = FakeConnection.for_migrations(three_migrations)

        await MigrationRunner(first).apply(three_migrations)
        await MigrationRunner(second).apply(list(reversed(three_migrations)))

        assert first.executed_migrations == second.executed_migrations

    @pytest.mark.asyncio
    async def test_ledger_rows_carry_batch_version_and_timing(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations)
        runner = MigrationRunner(
            conn, version_tag="1.4.0", batch_id="1.4.0-build-7", clock=fake_clock()
        )

        result = await runner.apply(three_migrations)

        assert result.batch_id == "1.4.0-build-7"
        for row in conn.ledger:
            assert row["batch_id"] == "1.4.0-build-7"
            assert row["app_version"] == "1.4.0"
            assert row["execution_ms"] == 250

    @pytest.mark.asyncio
    async def test_sql_executed_verbatim_in_transaction(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations)

        await MigrationRunner(conn).apply(three_migrations[:1])

        texts = [text for text, _ in conn.query_log]
        begin = texts.index("begin")
        assert texts[begin + 1] == three_migrations[0].sql
        assert texts[begin + 2].lower().startswith("insert into")
        assert texts[begin + 3] == "commit"

    @pytest.mark.asyncio
    async def test_custom_ledger_table_and_lock(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations)

        await MigrationRunner(conn, ledger_table="ops.ledger", lock_key=LockKey(5, 6)).apply(
            three_migrations
        )

        assert conn.statements()[0].startswith('create table if not exists "ops"."ledger"')
        assert conn.query_log[1] == ("select pg_advisory_lock($1, $2)", (5, 6))


class TestIdempotence:
    """Tests for re-running against an up-to-date ledger."""

    @pytest.mark.asyncio
    async def test_second_run_skips_everything(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations)
        await MigrationRunner(conn).apply(three_migrations)
        ledger_before = [dict(row) for row in conn.ledger]

        result = await MigrationRunner(conn).apply(three_migrations)

        assert result.applied == []
        assert result.skipped == THREE_FILES
        assert conn.ledger == ledger_before
        assert conn.executed_migrations == THREE_FILES

    @pytest.mark.asyncio
    async def test_partial_ledger_applies_remaining(self, three_migrations):
        first = min(three_migrations, key=lambda m: m.name)
        conn = FakeConnection.for_migrations(
            three_migrations, ledger=[{"name": first.name, "checksum": first.checksum}]
        )

        result = await MigrationRunner(conn).apply(three_migrations)

        assert result.skipped == [THREE_FILES[0]]
        assert result.applied == THREE_FILES[1:]


class TestChecksumIntegrity:
    """Tests for detection of modified, already-applied files."""

    @pytest.mark.asyncio
    async def test_mismatch_aborts_before_later_files(self, three_migrations):
        second = sorted(three_migrations, key=lambda m: m.name)[1]
        conn = FakeConnection.for_migrations(
            three_migrations, ledger=[{"name": second.name, "checksum": "0" * 64}]
        )

        with pytest.raises(ChecksumMismatchError, match="follow-up migration") as exc_info:
            await MigrationRunner(conn).apply(three_migrations)

        assert exc_info.value.name == second.name
        assert exc_info.value.expected == "0" * 64
        assert exc_info.value.actual == second.checksum
        # Earlier file stays committed, later file never attempted
        assert conn.executed_migrations == [THREE_FILES[0]]
        assert THREE_FILES[2] not in conn.inserted_migrations
        assert conn.unlock_calls == 1


class TestFailures:
    """Tests for failing migrations."""

    @pytest.mark.asyncio
    async def test_failed_migration_rolls_back_and_stops(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations, fail_migration=THREE_FILES[1])

        with pytest.raises(
            MigrationExecutionError, match=f"Failed to apply migration {THREE_FILES[1]}"
        ) as exc_info:
            await MigrationRunner(conn).apply(three_migrations)

        assert exc_info.value.migration == THREE_FILES[1]
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert conn.executed_migrations == [THREE_FILES[0]]
        assert conn.statements().count("commit") == 1
        assert conn.statements().count("rollback") == 1
        assert [row["name"] for row in conn.ledger] == [THREE_FILES[0]]
        assert conn.unlock_calls == 1
        assert conn.lock_held is False

    @pytest.mark.asyncio
    async def test_ledger_insert_failure_rolls_back(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations, fail_insert=True)

        with pytest.raises(MigrationExecutionError, match="ledger insert failed"):
            await MigrationRunner(conn).apply(three_migrations)

        assert conn.ledger == []
        assert conn.statements().count("rollback") == 1

    @pytest.mark.asyncio
    async def test_unlock_failure_does_not_mask_result(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations, fail_unlock=True)

        result = await MigrationRunner(conn).apply(three_migrations)

        assert result.applied == THREE_FILES
        assert conn.unlock_calls == 1


class TestDuplicatesAndEmpty:
    """Tests for duplicate names and empty catalogs."""

    @pytest.mark.asyncio
    async def test_duplicates_rejected_before_any_sql(self):
        migrations = build_migrations([THREE_FILES[0]]) + [
            MigrationFile(THREE_FILES[0], "select 42;", "f" * 64)
        ]
        conn = FakeConnection.for_migrations(migrations)

        with pytest.raises(DuplicateMigrationError):
            await MigrationRunner(conn).apply(migrations)

        assert conn.query_log == []

    @pytest.mark.asyncio
    async def test_zero_files_only_ensures_ledger(self):
        conn = FakeConnection()

        result = await MigrationRunner(conn, batch_id="b").apply([])

        assert result.applied == []
        assert result.skipped == []
        assert result.batch_id == "b"
        assert conn.ensure_calls == 1
        assert conn.lock_calls == 0
        assert len(conn.query_log) == 1


class TestLockDiscipline:
    """Tests for advisory lock handling."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail", [None, THREE_FILES[0], THREE_FILES[2]])
    async def test_lock_acquired_and_released_exactly_once(self, three_migrations, fail):
        conn = FakeConnection.for_migrations(three_migrations, fail_migration=fail)

        try:
            await MigrationRunner(conn).apply(three_migrations)
        except MigrationExecutionError:
            pass

        assert conn.lock_calls == 1
        assert conn.unlock_calls == 1
        assert conn.lock_held is False

    @pytest.mark.asyncio
    async def test_lock_taken_after_ensure_and_before_reads(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations)

        await MigrationRunner(conn).apply(three_migrations)

        statements = conn.statements()
        assert statements[0].startswith("create table if not exists")
        assert statements[1].startswith("select pg_advisory_lock")
        assert statements[2].startswith("select name, checksum")
        assert statements[-1].startswith("select pg_advisory_unlock")


class TestBatchId:
    def test_default_batch_id(self):
        assert default_batch_id("2.0.0").startswith("2.0.0-")
        assert default_batch_id(None).startswith("unversioned-")

    @pytest.mark.asyncio
    async def test_apply_migrations_convenience(self, three_migrations):
        conn = FakeConnection.for_migrations(three_migrations)

        result = await apply_migrations(conn, three_migrations, version_tag="3.1.0")

        assert result.applied == THREE_FILES
        assert result.batch_id.startswith("3.1.0-")
