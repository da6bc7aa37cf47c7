"""Tests for the storage layer (StoreHandle, schema, StoreCache)."""

import os
import sqlite3
import stat
import sys
from pathlib import Path

import pytest

from dbt_ui.build import build
from dbt_ui.errors import StoreOpenError
from dbt_ui.storage import (
    TABLES,
    StoreCache,
    StoreHandle,
    ensure_schema,
    list_objects,
    reset_data,
    table_counts,
)


@pytest.fixture
def mem_store():
    handle = StoreHandle.memory()
    ensure_schema(handle)
    yield handle
    handle.close()


def _insert_model(handle: StoreHandle, unique_id: str) -> None:
    handle.execute(
        "INSERT INTO model (unique_id, name, resource_type) VALUES (?, ?, 'model')",
        (unique_id, unique_id.split(".")[-1]),
    )


class TestSchema:
    """Tests for ensure_schema / reset_data."""

    def test_creates_tables_and_indexes(self, mem_store: StoreHandle):
        objects = {obj["name"]: obj["type"] for obj in list_objects(mem_store)}
        for table in TABLES:
            assert objects[table] == "table"
        for index in ("idx_column_model", "idx_edge_src", "idx_edge_dst", "idx_search_name", "idx_search_tags"):
            assert objects[index] == "index"

    def test_ensure_schema_is_idempotent(self, mem_store: StoreHandle):
        _insert_model(mem_store, "model.p.a")
        ensure_schema(mem_store)
        ensure_schema(mem_store)
        assert table_counts(mem_store)["model"] == 1

    def test_reset_data_empties_every_table(self, mem_store: StoreHandle):
        _insert_model(mem_store, "model.p.a")
        mem_store.execute("INSERT INTO column_def (model_unique_id, name) VALUES ('model.p.a', 'id')")
        mem_store.execute("INSERT INTO edge (src_unique_id, dst_unique_id) VALUES ('model.p.a', 'source.p.x')")
        mem_store.execute(
            "INSERT INTO search_doc (doc_type, doc_id, model_unique_id) VALUES ('model', 'model.p.a', 'model.p.a')"
        )
        with mem_store.transaction():
            reset_data(mem_store)
        assert table_counts(mem_store) == {table: 0 for table in TABLES}

    def test_column_requires_existing_model(self, mem_store: StoreHandle):
        with pytest.raises(sqlite3.IntegrityError):
            mem_store.execute("INSERT INTO column_def (model_unique_id, name) VALUES ('model.p.ghost', 'id')")

    def test_column_cascades_on_model_delete(self, mem_store: StoreHandle):
        _insert_model(mem_store, "model.p.a")
        mem_store.execute("INSERT INTO column_def (model_unique_id, name) VALUES ('model.p.a', 'id')")
        mem_store.execute("DELETE FROM model WHERE unique_id = 'model.p.a'")
        assert table_counts(mem_store)["column_def"] == 0

    def test_edge_default_type_and_dst_outside_models(self, mem_store: StoreHandle):
        mem_store.execute("INSERT INTO edge (src_unique_id, dst_unique_id) VALUES ('model.p.a', 'source.p.x')")
        row = mem_store.query_one("SELECT edge_type FROM edge")
        assert row["edge_type"] == "depends_on"

    def test_edge_insert_or_ignore(self, mem_store: StoreHandle):
        sql = "INSERT OR IGNORE INTO edge (src_unique_id, dst_unique_id, edge_type) VALUES (?, ?, ?)"
        mem_store.executemany(sql, [("a", "b", "depends_on"), ("a", "b", "depends_on")])
        mem_store.executemany(sql, [("a", "b", "depends_on")])
        assert table_counts(mem_store)["edge"] == 1


class TestTransaction:
    """StoreHandle.transaction commits or rolls back as a unit."""

    def test_commit(self, mem_store: StoreHandle):
        with mem_store.transaction():
            _insert_model(mem_store, "model.p.a")
        assert table_counts(mem_store)["model"] == 1

    def test_rollback_restores_previous_rows(self, mem_store: StoreHandle):
        _insert_model(mem_store, "model.p.keep")
        with pytest.raises(sqlite3.IntegrityError):
            with mem_store.transaction():
                reset_data(mem_store)
                _insert_model(mem_store, "model.p.new")
                _insert_model(mem_store, "model.p.new")
        rows = mem_store.query("SELECT unique_id FROM model")
        assert [r["unique_id"] for r in rows] == ["model.p.keep"]
        assert not mem_store.conn.in_transaction


class TestOpenAndSave:
    """StoreHandle.open / StoreHandle.save."""

    def test_readonly_missing_file(self, temp_dir: Path):
        path = temp_dir / "missing.sqlite"
        with pytest.raises(StoreOpenError) as exc_info:
            StoreHandle.open(path, readonly=True)
        assert str(path.resolve()) in str(exc_info.value)
        assert not path.exists()

    def test_readonly_not_a_database(self, temp_dir: Path):
        path = temp_dir / "junk.sqlite"
        path.write_bytes(b"this is not sqlite" * 100)
        with pytest.raises(StoreOpenError):
            StoreHandle.open(path, readonly=True)

    def test_readonly_missing_tables(self, temp_dir: Path):
        path = temp_dir / "empty.sqlite"
        sqlite3.connect(str(path)).close()
        with pytest.raises(StoreOpenError) as exc_info:
            StoreHandle.open(path, readonly=True)
        assert "missing tables" in str(exc_info.value)

    def test_readonly_rejects_writes(self, built_store: Path):
        with StoreHandle.open(built_store, readonly=True) as handle:
            with pytest.raises(sqlite3.OperationalError):
                handle.execute("DELETE FROM model")

    def test_save_round_trips_and_leaves_no_temp_files(self, mem_store: StoreHandle, temp_dir: Path):
        _insert_model(mem_store, "model.p.a")
        target = temp_dir / "nested" / "out.sqlite"
        saved = mem_store.save(target)
        assert saved == target.resolve()
        assert sorted(p.name for p in target.parent.iterdir()) == ["out.sqlite"]
        with StoreHandle.open(target, readonly=True) as handle:
            assert table_counts(handle)["model"] == 1

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_save_honours_umask(self, mem_store: StoreHandle, temp_dir: Path):
        old = os.umask(0o022)
        try:
            target = mem_store.save(temp_dir / "shared.sqlite")
        finally:
            os.umask(old)
        assert stat.S_IMODE(target.stat().st_mode) == 0o644

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_save_keeps_existing_mode(self, mem_store: StoreHandle, temp_dir: Path):
        target = temp_dir / "kept.sqlite"
        mem_store.save(target)
        os.chmod(target, 0o640)
        mem_store.save(target)
        assert stat.S_IMODE(target.stat().st_mode) == 0o640

    def test_writable_open_creates_file(self, temp_dir: Path):
        path = temp_dir / "deep" / "store.sqlite"
        with StoreHandle.open(path) as handle:
            ensure_schema(handle)
        assert path.exists()

    def test_casefold_function(self, mem_store: StoreHandle):
        assert mem_store.scalar("SELECT casefold('ÉTÉ Orders')") == "été orders"
        assert mem_store.scalar("SELECT casefold(NULL)") is None


class TestStoreCache:
    """StoreCache reuses a handle until the file's mtime changes."""

    def test_reuses_handle_while_unchanged(self, built_store: Path):
        cache = StoreCache(built_store)
        try:
            assert cache.get() is cache.get()
        finally:
            cache.close()

    def test_reopens_after_rebuild(self, built_store: Path, write_manifest):
        cache = StoreCache(built_store)
        try:
            first = cache.get()
            assert table_counts(first)["model"] == 6

            build(write_manifest({"nodes": {}}), built_store)
            stat = os.stat(built_store)
            os.utime(built_store, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))

            second = cache.refresh_if_stale()
            assert second is not first
            assert table_counts(second)["model"] == 0
        finally:
            cache.close()

    def test_missing_file_raises_and_retries(self, temp_dir: Path, sample_manifest_path: Path):
        path = temp_dir / "later.sqlite"
        cache = StoreCache(path)
        with pytest.raises(StoreOpenError) as exc_info:
            cache.get()
        assert str(path.resolve()) in str(exc_info.value)

        build(sample_manifest_path, path)
        try:
            assert table_counts(cache.get())["model"] == 6
        finally:
            cache.close()

    def test_invalidate_forces_reopen(self, built_store: Path):
        cache = StoreCache(built_store)
        try:
            first = cache.get()
            cache.invalidate()
            assert cache.get() is not first
        finally:
            cache.close()

    def test_path_follows_environment(self, built_store: Path, monkeypatch):
        monkeypatch.setenv("DBT_UI_DB_PATH", str(built_store))
        cache = StoreCache()
        try:
            assert cache.path == built_store.resolve()
            assert table_counts(cache.get())["model"] == 6
        finally:
            cache.close()
