"""
Versioned SQL migrations for the memory database.

Migration files live in backend/db/migrations and are named
    NNNN_description.sql
Applied versions and their checksums are recorded in `schema_migrations`.
Application happens on a plain sqlite3 connection under a file lock so
several processes booting against the same database file apply each
version exactly once.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

from config import env_float, first_env

_URL_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_VERSION_PATTERN = re.compile(r"^(?P<version>\d{4,})_[\w.-]*\.sql$")
_ADD_COLUMN_PATTERN = re.compile(
    r"^ALTER\s+TABLE\s+\S+\s+ADD\s+COLUMN\s+", re.IGNORECASE
)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str

    def read_script(self) -> str:
        return self.path.read_text(encoding="utf-8")


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """
    Local database file behind a SQLAlchemy sqlite URL.

    Returns None for in-memory databases; raises ValueError for anything
    that is not sqlite.
    """
    for prefix in _URL_PREFIXES:
        if database_url.startswith(prefix):
            raw = database_url[len(prefix):].split("?", 1)[0].split("#", 1)[0]
            raw = unquote(raw)
            if not raw or raw == ":memory:":
                return None
            return Path(raw)
    raise ValueError(
        "Unsupported DATABASE_URL for migrations; "
        "expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def checksum_of(content: bytes) -> str:
    """sha256 over the script with line endings normalised to LF."""
    try:
        text_value = content.decode("utf-8")
    except UnicodeDecodeError:
        return hashlib.sha256(content).hexdigest()
    text_value = text_value.replace("\r\n", "\n").replace("\r", "\n")
    return hashlib.sha256(text_value.encode("utf-8")).hexdigest()


def split_sql_statements(script: str) -> List[str]:
    """Split a script on semicolons that are outside quoted literals."""
    statements: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None

    for char in script:
        if quote is None and char in ("'", '"'):
            quote = char
        elif quote is not None and char == quote:
            quote = None

        if char == ";" and quote is None:
            statements.append("".join(current))
            current = []
        else:
            current.append(char)
    statements.append("".join(current))

    cleaned = (_strip_leading_comments(stmt) for stmt in statements)
    return [stmt for stmt in cleaned if stmt]


def _strip_leading_comments(statement: str) -> str:
    lines = statement.strip().splitlines()
    while lines and (not lines[0].strip() or lines[0].strip().startswith("--")):
        lines.pop(0)
    return "\n".join(lines).strip()


class MigrationRunner:
    """Discovers migration files and applies the ones not yet recorded."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.database_url = database_url
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = Path(migrations_dir) if migrations_dir else DEFAULT_MIGRATIONS_DIR
        self.lock_file_path = self._resolve_lock_path(
            lock_file_path or first_env(["DB_MIGRATION_LOCK_FILE"])
        )
        if lock_timeout_seconds is None:
            lock_timeout_seconds = env_float("DB_MIGRATION_LOCK_TIMEOUT_SEC", 10.0)
        self.lock_timeout_seconds = max(0.0, float(lock_timeout_seconds))
        self._logger = logger or logging.getLogger(__name__)

    def _resolve_lock_path(self, configured: Union[Path, str, None]) -> Optional[Path]:
        configured_text = str(configured or "").strip()
        if configured_text:
            candidate = Path(configured_text).expanduser()
            if not candidate.is_absolute() and self.database_file is not None:
                candidate = self.database_file.parent / candidate
            return candidate.resolve()
        if self.database_file is None:
            return None
        return self.database_file.with_name(self.database_file.name + ".migrate.lock")

    def discover(self) -> List[Migration]:
        if not self.migrations_dir.is_dir():
            return []
        found: List[Migration] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _VERSION_PATTERN.match(path.name)
            if match is None or path.name.endswith(".rollback.sql"):
                continue
            found.append(
                Migration(
                    version=match.group("version"),
                    path=path,
                    checksum=checksum_of(path.read_bytes()),
                )
            )
        return found

    async def pending_versions(self) -> List[str]:
        """Versions on disk that the database has not recorded yet."""
        return await asyncio.to_thread(self._pending_versions_sync)

    def _pending_versions_sync(self) -> List[str]:
        migrations = self.discover()
        if self.database_file is None or not self.database_file.exists():
            return [m.version for m in migrations]
        with sqlite3.connect(self.database_file) as conn:
            self._ensure_schema_table(conn)
            recorded = self._recorded_checksums(conn)
        return [m.version for m in migrations if m.version not in recorded]

    async def apply_pending(self) -> List[str]:
        """Apply every pending migration; returns the versions applied now."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        # In-memory databases are always built from the current ORM metadata.
        if not migrations or self.database_file is None:
            return []

        if self.lock_file_path is None:
            return self._apply(migrations)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock {self.lock_file_path} "
                f"after {self.lock_timeout_seconds}s"
            ) from exc

    def _apply(self, migrations: List[Migration]) -> List[str]:
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            self._ensure_schema_table(conn)
            recorded = self._recorded_checksums(conn)

            for migration in migrations:
                known = recorded.get(migration.version)
                if known is not None:
                    if known != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version}: "
                            f"recorded={known} current={migration.checksum}"
                        )
                    continue

                self._run_script(conn, migration.read_script())
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied.append(migration.version)
                self._logger.info(
                    "applied migration %s (%s)", migration.version, migration.path.name
                )
        return applied

    @staticmethod
    def _ensure_schema_table(conn: sqlite3.Connection) -> None:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations ("
            "version TEXT PRIMARY KEY, "
            "applied_at TEXT NOT NULL, "
            "checksum TEXT NOT NULL)"
        )
        conn.commit()

    @staticmethod
    def _recorded_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {str(version): str(checksum) for version, checksum in rows}

    def _run_script(self, conn: sqlite3.Connection, script: str) -> None:
        for statement in split_sql_statements(script):
            try:
                conn.execute(statement)
            except sqlite3.OperationalError as exc:
                # Columns already present on databases created from current metadata.
                if _ADD_COLUMN_PATTERN.match(statement) and "duplicate column name" in str(
                    exc
                ).lower():
                    self._logger.debug("skipping existing column: %s", statement)
                    continue
                raise


async def apply_pending_migrations(
    database_url: str,
    migrations_dir: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
) -> List[str]:
    """Run the migration runner once; used by `MemoryStore.init_db`."""
    runner = MigrationRunner(database_url, migrations_dir=migrations_dir, logger=logger)
    return await runner.apply_pending()
