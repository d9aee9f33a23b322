"""
SQLite-backed cache store.

Every refresh writes a new generation under a fresh id. Readers only ever
see rows of the generation named by the current_generation pointer, and the
pointer is switched in one transaction together with the sync metadata, so a
reader observes either the whole previous catalog or the whole new one.

The generation replaced by a commit is marked retired and kept until the
next successful commit deletes it. Readers hold a read transaction for the
duration of each query, and WAL mode gives them a stable view while the
writer works.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from nixdata.domain.catalog_utils import escape_like
from nixdata.domain.errors import (
    SchemaVersionError,
    StorageIOError,
    WriterBusyError,
)
from nixdata.domain.models import (
    CatalogEntry,
    CommitResult,
    EntryKind,
    SyncMetadata,
    catalog_entry_adapter,
    utcnow,
)
from nixdata.storage.db_manager import CacheStore, WriteHandle

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Rows buffered by a write handle before they are flushed in one transaction.
INSERT_BATCH_SIZE = 1000

_SCHEMA = [
    "CREATE TABLE IF NOT EXISTS schema_info (version INTEGER NOT NULL)",
    """
    CREATE TABLE IF NOT EXISTS generations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        revision TEXT,
        state TEXT NOT NULL,
        created_at TEXT NOT NULL,
        committed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS current_generation (
        singleton INTEGER PRIMARY KEY CHECK (singleton = 1),
        generation INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entries (
        generation INTEGER NOT NULL,
        kind TEXT NOT NULL,
        key TEXT NOT NULL,
        payload TEXT NOT NULL,
        PRIMARY KEY (generation, kind, key)
    ) WITHOUT ROWID
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_metadata (
        singleton INTEGER PRIMARY KEY CHECK (singleton = 1),
        last_revision TEXT,
        last_success_at TEXT,
        last_checked_at TEXT,
        last_attempt_at TEXT,
        last_error TEXT,
        last_error_kind TEXT,
        last_error_at TEXT,
        etag TEXT,
        package_count INTEGER NOT NULL DEFAULT 0,
        option_count INTEGER NOT NULL DEFAULT 0
    )
    """,
]


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteWriteHandle(WriteHandle):
    """Write handle for one pending generation. Not shared between threads."""

    def __init__(self, store: "SqliteCacheStore", conn: sqlite3.Connection, generation: int):
        self._store = store
        self._conn = conn
        self.generation = generation
        self._buffer: List[tuple] = []
        self._inserted = 0
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def insert(self, entry: CatalogEntry) -> None:
        self._ensure_open()
        self._buffer.append(
            (self.generation, entry.kind, entry.key, entry.model_dump_json(exclude_none=True))
        )
        if len(self._buffer) >= INSERT_BATCH_SIZE:
            self._flush()

    def _flush(self) -> None:
        if not self._buffer:
            return
        rows, self._buffer = self._buffer, []
        try:
            with self._store._write_txn(self._conn):
                self._conn.executemany(
                    "INSERT OR REPLACE INTO entries (generation, kind, key, payload) VALUES (?, ?, ?, ?)",
                    rows,
                )
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to write generation {self.generation}: {e}") from e
        self._inserted += len(rows)

    def commit(self, revision: str, etag: Optional[str] = None) -> CommitResult:
        self._ensure_open()
        try:
            self._flush()
            with self._store._write_txn(self._conn):
                result = self._store._switch_generation(self._conn, self.generation, revision, etag, utcnow())
        except Exception as e:
            logger.error(f"Commit of generation {self.generation} failed: {e}")
            self._discard()
            if isinstance(e, sqlite3.Error):
                raise StorageIOError(f"Failed to commit generation {self.generation}: {e}") from e
            raise

        try:
            result.collected_generations = self._store._collect_retired(
                self._conn, keep=result.retired_generation
            )
        except sqlite3.Error as e:
            # The commit itself succeeded; leftovers are collected next time.
            logger.warning(f"Garbage collection after generation {self.generation} failed: {e}")
        finally:
            self._finish()

        logger.info(
            f"Committed generation {result.generation} (revision={revision}, "
            f"packages={result.package_count}, options={result.option_count})"
        )
        return result

    def abort(self) -> None:
        if self._finished:
            return
        logger.info(f"Aborting generation {self.generation}")
        self._discard()

    def _discard(self) -> None:
        self._buffer = []
        try:
            with self._store._write_txn(self._conn):
                self._store._delete_generation(self._conn, self.generation)
        except sqlite3.Error as e:
            # Pending rows are invisible to readers and are removed on next open.
            logger.warning(f"Could not discard pending generation {self.generation}: {e}")
        finally:
            self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            self._conn.close()
        finally:
            self._store._writer_lock.release()

    def _ensure_open(self) -> None:
        if self._finished:
            raise StorageIOError(f"Write handle for generation {self.generation} is already finished")


class _EntryIterable:
    """Restartable view over one kind of the current generation."""

    def __init__(self, store: "SqliteCacheStore", kind: EntryKind):
        self._store = store
        self._kind = kind

    def __iter__(self) -> Iterator[CatalogEntry]:
        return self._store._iter_entries(self._kind)


class SqliteCacheStore(CacheStore):
    """
    Catalog cache in a single SQLite file.

    Opening checks the schema version and refuses foreign or incompatible
    files with SchemaVersionError; nothing in such a file is interpreted.
    """

    def __init__(self, db_path: Path, writer_timeout: float = 30.0, busy_timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.writer_timeout = writer_timeout
        self.busy_timeout = busy_timeout
        self._writer_lock = threading.Lock()
        self._closed = False
        self._open()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageIOError(f"Cannot open cache database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def _open(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create cache directory {self.db_path.parent}: {e}") from e

        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
                if not row[0].startswith("sqlite_")
            }
            if not tables:
                logger.debug(f"Creating cache database: {self.db_path}")
                self._create_schema(conn)
            else:
                self._check_schema(conn, tables)
            self._discard_pending(conn)
        except sqlite3.Error as e:
            raise StorageIOError(f"Cannot open cache database {self.db_path}: {e}") from e
        finally:
            conn.close()
        logger.debug(f"Opened cache database: {self.db_path}")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        with self._write_txn(conn):
            for statement in _SCHEMA:
                conn.execute(statement)
            if conn.execute("SELECT COUNT(*) FROM schema_info").fetchone()[0] == 0:
                conn.execute("INSERT INTO schema_info (version) VALUES (?)", (SCHEMA_VERSION,))
            conn.execute("INSERT OR IGNORE INTO current_generation (singleton, generation) VALUES (1, NULL)")
            conn.execute("INSERT OR IGNORE INTO sync_metadata (singleton) VALUES (1)")

    def _check_schema(self, conn: sqlite3.Connection, tables: set) -> None:
        if "schema_info" not in tables:
            raise SchemaVersionError(
                f"{self.db_path} is not a nix-data cache (tables: {', '.join(sorted(tables))})",
                found=None,
                expected=SCHEMA_VERSION,
            )
        row = conn.execute("SELECT version FROM schema_info").fetchone()
        found = row[0] if row else None
        if found != SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Cache schema version {found} is not supported (expected {SCHEMA_VERSION}); "
                f"migrate or wipe {self.db_path}",
                found=found,
                expected=SCHEMA_VERSION,
            )

    def _discard_pending(self, conn: sqlite3.Connection) -> None:
        """Remove generations left pending by a process that died mid-refresh."""
        pending = [row[0] for row in conn.execute("SELECT id FROM generations WHERE state = 'pending'")]
        if not pending:
            return
        logger.info(f"Discarding {len(pending)} unfinished generation(s): {pending}")
        with self._write_txn(conn):
            for generation in pending:
                self._delete_generation(conn, generation)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self.db_path.exists():
            return
        conn = self._connect()
        try:
            conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
        except sqlite3.Error as e:
            logger.debug(f"Checkpoint on close failed: {e}")
        finally:
            conn.close()

    @staticmethod
    def wipe(db_path: Path) -> None:
        """Delete a cache file (and its WAL side files) so it can be recreated."""
        db_path = Path(db_path)
        for suffix in ("", "-wal", "-shm"):
            path = db_path.with_name(db_path.name + suffix)
            path.unlink(missing_ok=True)
        logger.info(f"Wiped cache database: {db_path}")

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageIOError(f"Cache store {self.db_path} is closed")

    # ========================================================================
    # Transactions
    # ========================================================================

    @contextmanager
    def _write_txn(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        """A private connection holding one read transaction."""
        self._ensure_open()
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            yield conn
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to read cache database {self.db_path}: {e}") from e
        finally:
            try:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
            finally:
                conn.close()

    def _metadata_update(self, sql: str, params: tuple) -> None:
        self._ensure_open()
        conn = self._connect()
        try:
            with self._write_txn(conn):
                conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to update sync metadata: {e}") from e
        finally:
            conn.close()

    # ========================================================================
    # Generation switching (called inside a write transaction)
    # ========================================================================

    @staticmethod
    def _current_generation(conn: sqlite3.Connection) -> Optional[int]:
        row = conn.execute("SELECT generation FROM current_generation WHERE singleton = 1").fetchone()
        return row[0] if row else None

    def _switch_generation(
        self,
        conn: sqlite3.Connection,
        generation: int,
        revision: str,
        etag: Optional[str],
        now: datetime,
    ) -> CommitResult:
        previous = self._current_generation(conn)
        counts: Dict[str, int] = {
            row[0]: row[1]
            for row in conn.execute(
                "SELECT kind, COUNT(*) FROM entries WHERE generation = ? GROUP BY kind", (generation,)
            )
        }
        package_count = counts.get(EntryKind.PACKAGE.value, 0)
        option_count = counts.get(EntryKind.OPTION.value, 0)

        conn.execute(
            "UPDATE generations SET state = 'current', revision = ?, committed_at = ? WHERE id = ?",
            (revision, _ts(now), generation),
        )
        if previous is not None:
            conn.execute("UPDATE generations SET state = 'retired' WHERE id = ?", (previous,))
        conn.execute("UPDATE current_generation SET generation = ? WHERE singleton = 1", (generation,))
        conn.execute(
            """
            UPDATE sync_metadata SET
                last_revision = ?,
                last_success_at = ?,
                last_checked_at = ?,
                last_error = NULL,
                last_error_kind = NULL,
                last_error_at = NULL,
                etag = ?,
                package_count = ?,
                option_count = ?
            WHERE singleton = 1
            """,
            (revision, _ts(now), _ts(now), etag, package_count, option_count),
        )
        return CommitResult(
            generation=generation,
            revision=revision,
            package_count=package_count,
            option_count=option_count,
            retired_generation=previous,
        )

    def _collect_retired(self, conn: sqlite3.Connection, keep: Optional[int]) -> List[int]:
        """Delete retired generations except the one just replaced."""
        retired = [
            row[0]
            for row in conn.execute("SELECT id FROM generations WHERE state = 'retired'")
            if row[0] != keep
        ]
        if not retired:
            return []
        with self._write_txn(conn):
            for generation in retired:
                self._delete_generation(conn, generation)
        logger.debug(f"Collected retired generations: {retired}")
        return retired

    @staticmethod
    def _delete_generation(conn: sqlite3.Connection, generation: int) -> None:
        conn.execute("DELETE FROM entries WHERE generation = ?", (generation,))
        conn.execute("DELETE FROM generations WHERE id = ?", (generation,))

    # ========================================================================
    # Writing
    # ========================================================================

    def begin_replace(self) -> SqliteWriteHandle:
        self._ensure_open()
        if not self._writer_lock.acquire(timeout=self.writer_timeout):
            raise WriterBusyError(f"Another refresh is writing to {self.db_path}")
        try:
            conn = self._connect()
            try:
                with self._write_txn(conn):
                    cursor = conn.execute(
                        "INSERT INTO generations (state, created_at) VALUES ('pending', ?)",
                        (_ts(utcnow()),),
                    )
                    generation = cursor.lastrowid
            except sqlite3.Error as e:
                conn.close()
                raise StorageIOError(f"Failed to start a new generation: {e}") from e
        except BaseException:
            self._writer_lock.release()
            raise
        logger.debug(f"Started generation {generation}")
        return SqliteWriteHandle(self, conn, generation)

    def record_attempt(self, at: datetime) -> None:
        self._metadata_update(
            "UPDATE sync_metadata SET last_attempt_at = ? WHERE singleton = 1", (_ts(at),)
        )

    def record_not_modified(self, at: datetime, etag: Optional[str] = None) -> None:
        self._metadata_update(
            """
            UPDATE sync_metadata SET
                last_checked_at = ?,
                last_error = NULL,
                last_error_kind = NULL,
                last_error_at = NULL,
                etag = COALESCE(?, etag)
            WHERE singleton = 1
            """,
            (_ts(at), etag),
        )

    def record_failure(self, at: datetime, error: str, error_kind: Optional[str] = None) -> None:
        self._metadata_update(
            """
            UPDATE sync_metadata SET
                last_error = ?,
                last_error_kind = ?,
                last_error_at = ?
            WHERE singleton = 1
            """,
            (error, error_kind, _ts(at)),
        )

    # ========================================================================
    # Reading
    # ========================================================================

    def read(self, kind: EntryKind, key: str) -> Optional[CatalogEntry]:
        with self._reader() as conn:
            row = conn.execute(
                """
                SELECT e.payload FROM entries e
                JOIN current_generation c ON e.generation = c.generation
                WHERE e.kind = ? AND e.key = ?
                """,
                (EntryKind(kind).value, key),
            ).fetchone()
        return catalog_entry_adapter.validate_json(row["payload"]) if row else None

    def read_all(self, kind: EntryKind) -> Iterable[CatalogEntry]:
        return _EntryIterable(self, EntryKind(kind))

    def _iter_entries(self, kind: EntryKind) -> Iterator[CatalogEntry]:
        with self._reader() as conn:
            cursor = conn.execute(
                """
                SELECT e.payload FROM entries e
                JOIN current_generation c ON e.generation = c.generation
                WHERE e.kind = ?
                ORDER BY e.key
                """,
                (kind.value,),
            )
            for row in cursor:
                yield catalog_entry_adapter.validate_json(row["payload"])

    def search(self, kind: EntryKind, text: str, limit: Optional[int] = None) -> Iterator[CatalogEntry]:
        kind = EntryKind(kind)
        escaped = escape_like(text)
        with self._reader() as conn:
            cursor = conn.execute(
                r"""
                SELECT e.payload,
                    CASE
                        WHEN lower(e.key) = lower(?) THEN 0
                        WHEN e.key LIKE ? ESCAPE '\' THEN 1
                        ELSE 2
                    END AS rank
                FROM entries e
                JOIN current_generation c ON e.generation = c.generation
                WHERE e.kind = ? AND e.key LIKE ? ESCAPE '\'
                ORDER BY rank, e.key
                LIMIT ?
                """,
                (text, escaped + "%", kind.value, "%" + escaped + "%", -1 if limit is None else limit),
            )
            for row in cursor:
                yield catalog_entry_adapter.validate_json(row["payload"])

    def count(self, kind: EntryKind) -> int:
        with self._reader() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM entries e
                JOIN current_generation c ON e.generation = c.generation
                WHERE e.kind = ?
                """,
                (EntryKind(kind).value,),
            ).fetchone()
        return row[0]

    def read_metadata(self) -> SyncMetadata:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM sync_metadata WHERE singleton = 1").fetchone()
            generation = self._current_generation(conn)
        data: Dict[str, Any] = dict(row) if row else {}
        return SyncMetadata(
            last_revision=data.get("last_revision"),
            last_success_at=_parse_ts(data.get("last_success_at")),
            last_checked_at=_parse_ts(data.get("last_checked_at")),
            last_attempt_at=_parse_ts(data.get("last_attempt_at")),
            last_error=data.get("last_error"),
            last_error_kind=data.get("last_error_kind"),
            last_error_at=_parse_ts(data.get("last_error_at")),
            etag=data.get("etag"),
            generation=generation,
            package_count=data.get("package_count") or 0,
            option_count=data.get("option_count") or 0,
        )
