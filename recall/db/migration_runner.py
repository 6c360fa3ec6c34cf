"""
Schema migrations for the recall store.

Migration files live in recall/db/migrations and are named `NNNN_label.sql`.
Each applied version is recorded in `schema_migrations` together with a
checksum of the file; editing an applied migration is a hard error.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote

import structlog
from filelock import FileLock, Timeout

logger = structlog.get_logger(__name__)

_SQLITE_URL_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_NAME = re.compile(r"^(?P<version>\d{4,})_[\w\-]+\.sql$")
_ADD_COLUMN = re.compile(r"^ALTER\s+TABLE\s+.+\s+ADD\s+COLUMN\s+.+$", re.IGNORECASE | re.DOTALL)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """
    Return the database file behind a sqlite URL, or None for in-memory DBs.

    Raises ValueError for non-sqlite URLs.
    """
    for prefix in _SQLITE_URL_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = unquote(database_url[len(prefix):].split("?", 1)[0])
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        f"Unsupported DATABASE_URL '{database_url}'. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


class MigrationRunner:
    """Discover pending migrations and apply them under a file lock."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)

        lock_override = os.getenv("RECALL_MIGRATION_LOCK_FILE", "").strip()
        if lock_override:
            self.lock_file: Optional[Path] = Path(lock_override).expanduser().resolve()
        elif self.database_file is not None:
            self.lock_file = self.database_file.with_name(
                self.database_file.name + ".migrate.lock"
            )
        else:
            self.lock_file = None
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the versions applied."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        if not migrations or self.database_file is None:
            return []

        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        if self.lock_file is None:
            return self._apply(migrations)

        lock = FileLock(str(self.lock_file), timeout=self.lock_timeout_seconds)
        try:
            with lock:
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock {self.lock_file} "
                f"({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply(self, migrations: List[Migration]) -> List[str]:
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            recorded: Dict[str, str] = {
                str(version): str(checksum)
                for version, checksum in conn.execute(
                    "SELECT version, checksum FROM schema_migrations"
                )
            }

            for migration in migrations:
                known = recorded.get(migration.version)
                if known is not None:
                    if known != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version}: "
                            f"recorded={known} current={migration.checksum}"
                        )
                    continue

                for statement in split_sql_statements(
                    migration.path.read_text(encoding="utf-8")
                ):
                    try:
                        conn.execute(statement)
                    except sqlite3.OperationalError as exc:
                        # Re-adding an existing column is treated as already applied.
                        if _ADD_COLUMN.match(statement) and "duplicate column name" in str(exc).lower():
                            continue
                        raise
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) VALUES (?, ?, ?)",
                    (migration.version, datetime.now(timezone.utc).isoformat(), migration.checksum),
                )
                conn.commit()
                applied.append(migration.version)
                logger.info("schema_migration_applied", version=migration.version)
        return applied

    def discover(self) -> List[Migration]:
        if not self.migrations_dir.exists():
            return []
        found: List[Migration] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_NAME.match(path.name)
            if not match:
                continue
            found.append(
                Migration(
                    version=match.group("version"),
                    path=path,
                    checksum=normalized_checksum(path.read_bytes()),
                )
            )
        return found


def normalized_checksum(content: bytes) -> str:
    """sha256 over the file with line endings normalized to LF."""
    try:
        payload = (
            content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n").encode("utf-8")
        )
    except UnicodeDecodeError:
        payload = content
    return hashlib.sha256(payload).hexdigest()


def split_sql_statements(script: str) -> List[str]:
    """Split a script on semicolons outside quotes, dropping full-line `--` comments."""
    statements: List[str] = []
    buffer: List[str] = []
    quote: Optional[str] = None

    for char in script:
        if char in ("'", '"'):
            if quote is None:
                quote = char
            elif quote == char:
                quote = None
        if char == ";" and quote is None:
            statements.append("".join(buffer))
            buffer = []
        else:
            buffer.append(char)
    statements.append("".join(buffer))

    result = []
    for statement in statements:
        lines = [
            line
            for line in statement.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        if lines:
            result.append("\n".join(lines).strip())
    return result


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Convenience wrapper used by SQLiteClient.init_db()."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
