from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import commit_entries, option_entry, package_entry
from nixdata.domain.errors import SchemaVersionError, StorageIOError, WriterBusyError
from nixdata.domain.models import EntryKind
from nixdata.storage.sqlite_db_manager import SqliteCacheStore


def _keys(entries) -> list:
    return [e.key for e in entries]


def _generations(db_path: Path) -> list:
    with closing(sqlite3.connect(str(db_path))) as conn:
        return conn.execute("SELECT id, state FROM generations ORDER BY id").fetchall()


def test_fresh_store_is_empty(store: SqliteCacheStore) -> None:
    assert list(store.read_all(EntryKind.PACKAGE)) == []
    assert store.read(EntryKind.PACKAGE, "hello") is None
    assert store.count(EntryKind.OPTION) == 0

    metadata = store.read_metadata()
    assert metadata.has_catalog is False
    assert metadata.last_revision is None
    assert metadata.is_stale(3600) is True


def test_commit_makes_generation_visible(store: SqliteCacheStore) -> None:
    result = commit_entries(
        store,
        [
            package_entry("zlib", "1.3"),
            package_entry("hello", "2.10"),
            option_entry("services.nginx.enable"),
            package_entry("hello", "2.12.1"),
        ],
        revision="24.05.1.abc",
    )

    assert result.revision == "24.05.1.abc"
    assert result.package_count == 2
    assert result.option_count == 1
    assert result.retired_generation is None

    assert _keys(store.read_all(EntryKind.PACKAGE)) == ["hello", "zlib"]
    assert store.read(EntryKind.PACKAGE, "hello").version == "2.12.1"
    assert store.read(EntryKind.OPTION, "services.nginx.enable").type == "boolean"
    assert store.read(EntryKind.OPTION, "hello") is None

    metadata = store.read_metadata()
    assert metadata.last_revision == "24.05.1.abc"
    assert metadata.generation == result.generation
    assert metadata.package_count == 2
    assert metadata.option_count == 1
    assert metadata.last_success_at is not None
    assert metadata.last_success_at.tzinfo is not None


def test_read_all_is_restartable(store: SqliteCacheStore) -> None:
    commit_entries(store, [package_entry("a"), package_entry("b")])
    entries = store.read_all(EntryKind.PACKAGE)

    assert _keys(entries) == ["a", "b"]
    assert _keys(entries) == ["a", "b"]


def test_reader_keeps_its_generation_across_a_commit(store: SqliteCacheStore) -> None:
    commit_entries(store, [package_entry("a", "1"), package_entry("b", "1")], revision="old")

    reader = iter(store.read_all(EntryKind.PACKAGE))
    first = next(reader)

    commit_entries(store, [package_entry("a", "2"), package_entry("c", "2")], revision="new")

    rest = list(reader)
    assert [(e.key, e.version) for e in [first] + rest] == [("a", "1"), ("b", "1")]
    assert [(e.key, e.version) for e in store.read_all(EntryKind.PACKAGE)] == [("a", "2"), ("c", "2")]


def test_abort_has_no_visible_effect(store: SqliteCacheStore) -> None:
    commit_entries(store, [package_entry("hello")], revision="rev-1")

    handle = store.begin_replace()
    handle.insert_many([package_entry("other")])
    handle.abort()
    handle.abort()

    assert _keys(store.read_all(EntryKind.PACKAGE)) == ["hello"]
    assert store.read_metadata().last_revision == "rev-1"
    # The writer lock is released
    store.begin_replace().abort()


def test_handle_context_manager_aborts_on_error(store: SqliteCacheStore) -> None:
    with pytest.raises(RuntimeError):
        with store.begin_replace() as handle:
            handle.insert(package_entry("hello"))
            raise RuntimeError("boom")

    assert store.count(EntryKind.PACKAGE) == 0
    store.begin_replace().abort()


class FailingSwitchStore(SqliteCacheStore):
    """Fails after the generation pointer has been switched, inside the commit transaction."""

    def _switch_generation(self, conn, generation, revision, etag, now):
        super()._switch_generation(conn, generation, revision, etag, now)
        raise sqlite3.OperationalError("disk I/O error")


def test_failed_commit_keeps_previous_generation(tmp_path: Path) -> None:
    db_path = tmp_path / "catalog.db"
    commit_entries(SqliteCacheStore(db_path), [package_entry("hello", "2.10")], revision="rev-1")

    store = FailingSwitchStore(db_path, writer_timeout=0)
    handle = store.begin_replace()
    handle.insert_many([package_entry("hello", "2.12.1"), package_entry("jq")])
    with pytest.raises(StorageIOError):
        handle.commit("rev-2")

    assert [(e.key, e.version) for e in store.read_all(EntryKind.PACKAGE)] == [("hello", "2.10")]
    metadata = store.read_metadata()
    assert metadata.last_revision == "rev-1"
    assert metadata.package_count == 1
    assert [state for _, state in _generations(db_path)] == ["current"]

    with pytest.raises(StorageIOError):
        handle.insert(package_entry("late"))
    store.begin_replace().abort()
    store.close()


def test_garbage_collection_keeps_current_and_previous(store: SqliteCacheStore) -> None:
    first = commit_entries(store, [package_entry("a")], revision="r1")
    second = commit_entries(store, [package_entry("b")], revision="r2")
    third = commit_entries(store, [package_entry("c")], revision="r3")

    assert second.retired_generation == first.generation
    assert second.collected_generations == []
    assert third.retired_generation == second.generation
    assert third.collected_generations == [first.generation]

    assert _generations(store.db_path) == [(second.generation, "retired"), (third.generation, "current")]
    assert _keys(store.read_all(EntryKind.PACKAGE)) == ["c"]


def test_generation_ids_are_never_reused(store: SqliteCacheStore) -> None:
    handle = store.begin_replace()
    aborted = handle.generation
    handle.abort()

    result = commit_entries(store, [package_entry("a")])
    assert result.generation > aborted


def test_incompatible_schema_version_is_refused(tmp_path: Path) -> None:
    db_path = tmp_path / "catalog.db"
    SqliteCacheStore(db_path).close()
    with closing(sqlite3.connect(str(db_path))) as conn:
        conn.execute("UPDATE schema_info SET version = 99")
        conn.commit()

    with pytest.raises(SchemaVersionError) as excinfo:
        SqliteCacheStore(db_path)
    assert excinfo.value.found == 99
    assert excinfo.value.expected == 1

    SqliteCacheStore.wipe(db_path)
    store = SqliteCacheStore(db_path)
    assert store.read_metadata().has_catalog is False
    store.close()


def test_foreign_database_is_refused(tmp_path: Path) -> None:
    db_path = tmp_path / "catalog.db"
    with closing(sqlite3.connect(str(db_path))) as conn:
        conn.execute("CREATE TABLE pkgs (attribute TEXT PRIMARY KEY, pname TEXT, version TEXT)")
        conn.execute("INSERT INTO pkgs VALUES ('hello', 'hello', '2.12.1')")
        conn.commit()

    with pytest.raises(SchemaVersionError):
        SqliteCacheStore(db_path)

    # Nothing in the foreign file was touched
    with closing(sqlite3.connect(str(db_path))) as conn:
        assert conn.execute("SELECT COUNT(*) FROM pkgs").fetchone()[0] == 1


def test_unfinished_generation_is_discarded_on_open(tmp_path: Path) -> None:
    db_path = tmp_path / "catalog.db"
    store = SqliteCacheStore(db_path)
    commit_entries(store, [package_entry("hello")], revision="rev-1")

    handle = store.begin_replace()
    handle.insert(package_entry("half-written"))
    handle._flush()
    assert "pending" in [state for _, state in _generations(db_path)]

    reopened = SqliteCacheStore(db_path)
    assert [state for _, state in _generations(db_path)] == ["current"]
    assert _keys(reopened.read_all(EntryKind.PACKAGE)) == ["hello"]

    handle.abort()
    reopened.close()
    store.close()


def test_second_writer_is_rejected(store: SqliteCacheStore) -> None:
    handle = store.begin_replace()
    with pytest.raises(WriterBusyError):
        store.begin_replace()
    handle.abort()


def test_metadata_recording(store: SqliteCacheStore) -> None:
    commit_entries(store, [package_entry("hello")], revision="rev-1")
    t0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    store.record_attempt(t0)
    store.record_failure(t0 + timedelta(seconds=1), "connection refused", "network")
    metadata = store.read_metadata()
    assert metadata.last_attempt_at == t0
    assert metadata.last_error == "connection refused"
    assert metadata.last_error_kind == "network"
    assert metadata.last_error_at == t0 + timedelta(seconds=1)
    # A failure leaves the catalog alone
    assert metadata.last_revision == "rev-1"
    assert store.count(EntryKind.PACKAGE) == 1

    store.record_not_modified(t0 + timedelta(seconds=2), etag='"abc"')
    metadata = store.read_metadata()
    assert metadata.last_error is None
    assert metadata.last_error_kind is None
    assert metadata.last_checked_at == t0 + timedelta(seconds=2)
    assert metadata.etag == '"abc"'

    store.record_not_modified(t0 + timedelta(seconds=3))
    assert store.read_metadata().etag == '"abc"'


def test_closed_store_refuses_reads(tmp_path: Path) -> None:
    store = SqliteCacheStore(tmp_path / "catalog.db")
    store.close()
    with pytest.raises(StorageIOError):
        store.read_metadata()
