"""SQLite persistence: connection handle, schema management, handle cache.

Architecture:
- :class:`StoreHandle` wraps a single ``sqlite3`` connection and exposes
  query helpers plus an explicit transactional block.
- :func:`ensure_schema` / :func:`reset_data` own the four tables
  (``model``, ``column_def``, ``edge``, ``search_doc``).
- :class:`StoreCache` keeps one read-only handle per store file and reopens
  it when the file's modification time changes, so a rebuild is picked up
  without restarting the server.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import stat
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from . import config
from .errors import SchemaError, StoreOpenError

logger = logging.getLogger(__name__)

TABLES = ("model", "column_def", "edge", "search_doc")

# Children first so foreign keys hold at every step.
RESET_ORDER = ("search_doc", "edge", "column_def", "model")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS model (
        unique_id     TEXT PRIMARY KEY,
        name          TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        package_name  TEXT,
        path          TEXT,
        database_name TEXT,
        schema_name   TEXT,
        alias         TEXT,
        materialized  TEXT,
        description   TEXT,
        tags_json     TEXT,
        meta_json     TEXT,
        config_json   TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS column_def (
        model_unique_id TEXT NOT NULL,
        name            TEXT NOT NULL,
        description     TEXT,
        meta_json       TEXT,
        PRIMARY KEY (model_unique_id, name),
        FOREIGN KEY (model_unique_id) REFERENCES model(unique_id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS edge (
        src_unique_id TEXT NOT NULL,
        dst_unique_id TEXT NOT NULL,
        edge_type     TEXT NOT NULL DEFAULT 'depends_on',
        PRIMARY KEY (src_unique_id, dst_unique_id, edge_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS search_doc (
        doc_type        TEXT NOT NULL,
        doc_id          TEXT NOT NULL,
        model_unique_id TEXT NOT NULL,
        name            TEXT NOT NULL DEFAULT '',
        description     TEXT NOT NULL DEFAULT '',
        tags            TEXT NOT NULL DEFAULT '',
        schema_name     TEXT NOT NULL DEFAULT '',
        package_name    TEXT NOT NULL DEFAULT '',
        path            TEXT NOT NULL DEFAULT '',
        PRIMARY KEY (doc_type, doc_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_model_name ON model(name)",
    "CREATE INDEX IF NOT EXISTS idx_column_model ON column_def(model_unique_id)",
    "CREATE INDEX IF NOT EXISTS idx_edge_src ON edge(src_unique_id)",
    "CREATE INDEX IF NOT EXISTS idx_edge_dst ON edge(dst_unique_id)",
    "CREATE INDEX IF NOT EXISTS idx_search_name ON search_doc(name)",
    "CREATE INDEX IF NOT EXISTS idx_search_schema ON search_doc(schema_name)",
    "CREATE INDEX IF NOT EXISTS idx_search_package ON search_doc(package_name)",
    "CREATE INDEX IF NOT EXISTS idx_search_tags ON search_doc(tags)",
)


def _casefold(value: Any) -> Any:
    """Unicode case folding, registered in SQL as ``casefold()``."""
    return value.casefold() if isinstance(value, str) else value


def _file_mode(target: Path) -> int:
    """Mode for a saved store: the existing file's mode, else 0o666 minus the umask."""
    try:
        return stat.S_IMODE(os.stat(target).st_mode)
    except FileNotFoundError:
        pass
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


# ===================================================================
# StoreHandle
# ===================================================================


class StoreHandle:
    """Lifecycle wrapper around one SQLite connection.

    The connection runs in autocommit mode; :meth:`transaction` issues
    explicit ``BEGIN``/``COMMIT``/``ROLLBACK`` so a build is one atomic unit.
    """

    def __init__(self, conn: sqlite3.Connection, path: Optional[Path] = None) -> None:
        self.conn = conn
        self.path = path
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.create_function("casefold", 1, _casefold, deterministic=True)

    @classmethod
    def memory(cls) -> "StoreHandle":
        return cls(sqlite3.connect(":memory:", isolation_level=None))

    @classmethod
    def open(cls, path: Union[str, Path], readonly: bool = False) -> "StoreHandle":
        """Open the store at *path*.

        Read-only handles never create the file and are checked for the
        expected tables. Any failure raises :class:`StoreOpenError`.
        """
        resolved = Path(path).expanduser().resolve()
        try:
            if readonly:
                if not resolved.is_file():
                    raise StoreOpenError(str(resolved), "file does not exist")
                conn = sqlite3.connect(
                    resolved.as_uri() + "?mode=ro",
                    uri=True,
                    isolation_level=None,
                    check_same_thread=False,
                )
            else:
                resolved.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(resolved), isolation_level=None)
            handle = cls(conn, resolved)
        except (sqlite3.Error, OSError) as exc:
            raise StoreOpenError(str(resolved), str(exc)) from exc

        if readonly:
            try:
                verify_schema(handle)
            except StoreOpenError:
                handle.close()
                raise
        logger.debug("Opened store %s (readonly=%s)", resolved, readonly)
        return handle

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "StoreHandle":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> int:
        cur = self.conn.executemany(sql, rows)
        return cur.rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchone()

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.conn.execute(sql, params).fetchone()
        return row[0] if row is not None else None

    @contextmanager
    def transaction(self) -> Iterator["StoreHandle"]:
        """Run the block atomically; roll back and re-raise on any exception."""
        self.conn.execute("BEGIN")
        try:
            yield self
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Union[str, Path]) -> Path:
        """Copy the database to *path* through a temp file and an atomic rename.

        Readers holding the old file keep reading it; new opens see the new
        contents in full.
        """
        target = Path(path).expanduser().resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            os.chmod(tmp_path, _file_mode(target))
            dest = sqlite3.connect(str(tmp_path))
            try:
                self.conn.backup(dest)
            finally:
                dest.close()
            os.replace(tmp_path, target)
        except BaseException:
            if tmp_path.exists():
                tmp_path.unlink()
            raise
        logger.debug("Saved store to %s", target)
        return target


# ===================================================================
# Schema management
# ===================================================================


def ensure_schema(handle: StoreHandle) -> None:
    """Create the four tables and their indexes if absent."""
    try:
        for statement in SCHEMA_STATEMENTS:
            handle.execute(statement)
    except sqlite3.Error as exc:
        raise SchemaError(f"Schema creation failed: {exc}") from exc


def reset_data(handle: StoreHandle) -> None:
    """Delete every row, children before parents.

    Must run inside the same transaction as the inserts that follow it.
    """
    for table in RESET_ORDER:
        handle.execute(f"DELETE FROM {table}")


def verify_schema(handle: StoreHandle) -> None:
    path = str(handle.path) if handle.path else ":memory:"
    try:
        rows = handle.query("SELECT name FROM sqlite_master WHERE type = 'table'")
    except sqlite3.Error as exc:
        raise StoreOpenError(path, str(exc)) from exc
    present = {row["name"] for row in rows}
    missing = [table for table in TABLES if table not in present]
    if missing:
        raise StoreOpenError(path, f"missing tables: {', '.join(missing)}")


def table_counts(handle: StoreHandle) -> Dict[str, int]:
    return {table: int(handle.scalar(f"SELECT COUNT(*) FROM {table}")) for table in TABLES}


def list_objects(handle: StoreHandle) -> List[Dict[str, str]]:
    rows = handle.query(
        "SELECT name, type FROM sqlite_master "
        "WHERE type IN ('table', 'view', 'index') AND name NOT LIKE 'sqlite_%' "
        "ORDER BY type, name"
    )
    return [{"name": row["name"], "type": row["type"]} for row in rows]


# ===================================================================
# StoreCache
# ===================================================================


class StoreCache:
    """Holds ``(path, mtime, handle)`` for the query side.

    When *path* is omitted the location is re-read from configuration on
    every call, so ``DBT_UI_DB_PATH`` changes are honoured.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self._configured_path = Path(path).expanduser().resolve() if path else None
        self._handle: Optional[StoreHandle] = None
        self._cached_path: Optional[Path] = None
        self._mtime: Optional[int] = None

    @property
    def path(self) -> Path:
        return self._configured_path or config.get_db_path()

    def get(self) -> StoreHandle:
        return self.refresh_if_stale()

    def refresh_if_stale(self) -> StoreHandle:
        path = self.path
        try:
            mtime = os.stat(path).st_mtime_ns
        except OSError as exc:
            raise StoreOpenError(str(path), exc.strerror or str(exc)) from exc

        if self._handle is not None and self._cached_path == path and self._mtime == mtime:
            return self._handle

        if self._handle is not None:
            logger.info("Store %s changed on disk; reopening", path)
        self.invalidate()
        handle = StoreHandle.open(path, readonly=True)
        self._handle = handle
        self._cached_path = path
        self._mtime = mtime
        return handle

    def invalidate(self) -> None:
        if self._handle is not None:
            self._handle.close()
        self._handle = None
        self._cached_path = None
        self._mtime = None

    def close(self) -> None:
        self.invalidate()
