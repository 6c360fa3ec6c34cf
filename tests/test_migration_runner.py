import asyncio
import sqlite3
from pathlib import Path

import pytest
from filelock import FileLock

from recall.db.migration_runner import (
    MigrationRunner,
    normalized_checksum,
    split_sql_statements,
    sqlite_file_from_url,
)
from recall.db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _write_migration(migrations_dir: Path, name: str, sql: str) -> Path:
    migrations_dir.mkdir(parents=True, exist_ok=True)
    path = migrations_dir / name
    path.write_text(sql, encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_migration_runner_applies_and_tracks_versions(tmp_path: Path) -> None:
    db_path = tmp_path / "recall.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir, "0001_test.sql", "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);"
    )
    _write_migration(migrations_dir, "notes.sql", "THIS IS NOT A MIGRATION;")

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    first_applied = await runner.apply_pending()
    second_applied = await runner.apply_pending()

    assert first_applied == ["0001"]
    assert second_applied == []

    with sqlite3.connect(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == 1
        version = conn.execute("SELECT version FROM schema_migrations").fetchone()[0]
        assert version == "0001"


@pytest.mark.asyncio
async def test_migration_runner_detects_checksum_mismatch(tmp_path: Path) -> None:
    db_path = tmp_path / "recall.db"
    migrations_dir = tmp_path / "migrations"
    migration_file = _write_migration(
        migrations_dir, "0001_test.sql", "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);"
    )

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    await runner.apply_pending()

    migration_file.write_text(
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY, x TEXT);",
        encoding="utf-8",
    )

    with pytest.raises(RuntimeError, match="Checksum mismatch"):
        await runner.apply_pending()


@pytest.mark.asyncio
async def test_migration_runner_tolerates_existing_column(tmp_path: Path) -> None:
    db_path = tmp_path / "recall.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE things (id INTEGER PRIMARY KEY, label TEXT)")

    migrations_dir = tmp_path / "migrations"
    _write_migration(migrations_dir, "0001_label.sql", "ALTER TABLE things ADD COLUMN label TEXT;")

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    assert await runner.apply_pending() == ["0001"]


@pytest.mark.asyncio
async def test_migration_runner_tolerates_existing_column_after_comment(tmp_path: Path) -> None:
    db_path = tmp_path / "recall.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE things (id INTEGER PRIMARY KEY, label TEXT)")

    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_label.sql",
        "-- Older databases lack the label column.\n"
        "ALTER TABLE things ADD COLUMN label TEXT;\n"
        "-- Also add a note column.\n"
        "ALTER TABLE things ADD COLUMN note TEXT;\n",
    )

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    assert await runner.apply_pending() == ["0001"]

    with sqlite3.connect(db_path) as conn:
        columns = [row[1] for row in conn.execute("PRAGMA table_info(things)")]
    assert columns == ["id", "label", "note"]


@pytest.mark.asyncio
async def test_migration_runner_serializes_concurrent_apply(tmp_path: Path) -> None:
    db_path = tmp_path / "concurrent.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir, "0001_test.sql", "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);"
    )

    runner_a = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    runner_b = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    results = await asyncio.gather(runner_a.apply_pending(), runner_b.apply_pending())

    flattened = [version for batch in results for version in batch]
    assert flattened.count("0001") == 1


@pytest.mark.asyncio
async def test_migration_runner_times_out_when_lock_is_held(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    db_path = tmp_path / "timeout.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir, "0001_test.sql", "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);"
    )

    lock_path = tmp_path / "migration.lock"
    monkeypatch.setenv("RECALL_MIGRATION_LOCK_FILE", str(lock_path))
    with FileLock(str(lock_path), timeout=1):
        runner = MigrationRunner(
            _sqlite_url(db_path), migrations_dir=migrations_dir, lock_timeout_seconds=0.01
        )
        assert runner.lock_file == lock_path.resolve()
        with pytest.raises(RuntimeError, match="Timed out waiting for migration lock"):
            await runner.apply_pending()


@pytest.mark.asyncio
async def test_migration_runner_skips_in_memory_database(tmp_path: Path) -> None:
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir, "0001_test.sql", "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);"
    )

    runner = MigrationRunner("sqlite+aiosqlite:///:memory:", migrations_dir=migrations_dir)
    assert await runner.apply_pending() == []


@pytest.mark.asyncio
async def test_sqlite_client_init_db_applies_project_migrations(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.db"
    client = SQLiteClient(_sqlite_url(db_path))
    await client.init_db()
    await client.init_db()
    await client.close()

    with sqlite3.connect(db_path) as conn:
        versions = [row[0] for row in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]
        assert versions == ["0001", "0002"]
        table_names = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    assert {"sessions", "messages", "memories", "index_meta"} <= table_names


def test_sqlite_file_from_url_handles_query_and_memory() -> None:
    assert sqlite_file_from_url("sqlite+aiosqlite:///:memory:") is None
    assert sqlite_file_from_url("sqlite:///tmp/x.db?cache=shared") == Path("tmp/x.db")
    with pytest.raises(ValueError):
        sqlite_file_from_url("postgresql://localhost/db")


def test_split_sql_statements_respects_quotes_and_comments() -> None:
    script = "-- header only;\nINSERT INTO t VALUES ('a;b');\nSELECT 1;\n"
    assert split_sql_statements(script) == ["INSERT INTO t VALUES ('a;b')", "SELECT 1"]

    commented = "-- why the column exists\nALTER TABLE t ADD COLUMN c TEXT;\n"
    assert split_sql_statements(commented) == ["ALTER TABLE t ADD COLUMN c TEXT"]


def test_normalized_checksum_ignores_line_endings() -> None:
    assert normalized_checksum(b"a\r\nb") == normalized_checksum(b"a\nb")
