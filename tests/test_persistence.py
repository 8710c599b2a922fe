"""
Tests for the persistent tier: SQLite and flat-file backends behind PersistentStore.
"""
import json
import sqlite3
import tempfile
import threading
from pathlib import Path

import pytest

from storefront.cache import (
    CacheEntry,
    FlatFileBackend,
    PersistenceError,
    PersistentStore,
    QuotaExceededError,
    SQLiteBackend,
    content_hash,
)


def make_entry(data, timestamp=0, schema_version="1"):
    return CacheEntry(
        data=data,
        timestamp=timestamp,
        schema_version=schema_version,
        content_hash=content_hash(data),
    )


@pytest.fixture
def temp_dir():
    """Temporary directory for database and flat files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sqlite_store(temp_dir, clock):
    backend = SQLiteBackend(temp_dir / "cache.db")
    return PersistentStore(backend, "products", schema_version="1", cache_time=1000, clock=clock)


@pytest.fixture
def flat_store(temp_dir, clock):
    backend = FlatFileBackend(temp_dir / "cache.json")
    return PersistentStore(backend, "products", schema_version="1", cache_time=1000, clock=clock)


# =============================================================================
# SQLite backend
# =============================================================================

class TestSQLiteBackend:
    """Tests for the structured backend."""

    def test_probe_succeeds_for_writable_directory(self, temp_dir):
        assert SQLiteBackend.probe(temp_dir / "probe.db") is True

    def test_migration_sets_user_version_and_hash_column(self, temp_dir):
        db_path = temp_dir / "cache.db"
        SQLiteBackend(db_path)

        conn = sqlite3.connect(str(db_path))
        try:
            version = conn.execute("PRAGMA user_version").fetchone()[0]
            columns = [row[1] for row in conn.execute("PRAGMA table_info(cache_entries)")]
        finally:
            conn.close()

        assert version == 2
        assert "content_hash" in columns

    def test_namespaces_are_isolated(self, temp_dir):
        backend = SQLiteBackend(temp_dir / "cache.db")
        raw = make_entry([1]).to_dict()
        backend.save("products", "k", raw)
        backend.save("config", "k", raw)

        assert backend.purge("products") == 1
        assert backend.load("products", "k") is None
        assert backend.load("config", "k") == raw

    def test_unopenable_database_raises_persistence_error(self, temp_dir):
        backend = SQLiteBackend(temp_dir / "cache.db")
        # A directory where the database file should be makes every open fail
        backend.db_path = temp_dir

        with pytest.raises(PersistenceError):
            backend.load("products", "k")


# =============================================================================
# Flat-file backend
# =============================================================================

class TestFlatFileBackend:
    """Tests for the fallback backend."""

    def test_survives_reopen(self, temp_dir):
        path = temp_dir / "cache.json"
        raw = make_entry({"a": 1}).to_dict()
        FlatFileBackend(path).save("products", "k", raw)

        assert FlatFileBackend(path).load("products", "k") == raw

    def test_corrupt_file_starts_empty(self, temp_dir):
        path = temp_dir / "cache.json"
        path.write_text("{not json", encoding="utf-8")

        backend = FlatFileBackend(path)

        assert backend.load_all("products") == {}

    def test_quota_exceeded_leaves_store_untouched(self, temp_dir):
        backend = FlatFileBackend(temp_dir / "cache.json", quota_bytes=200)

        with pytest.raises(QuotaExceededError):
            backend.save("products", "k", make_entry("x" * 500).to_dict())

        assert backend.load("products", "k") is None

    def test_instances_sharing_a_file_keep_each_others_writes(self, temp_dir):
        path = temp_dir / "cache.json"
        products = FlatFileBackend(path)
        config = FlatFileBackend(path)

        products.save("products", "k", make_entry(1).to_dict())
        config.save("config", "k", make_entry(2).to_dict())

        assert products.load("products", "k") is not None
        assert products.load("config", "k") is not None


# =============================================================================
# PersistentStore
# =============================================================================

class TestPersistentStore:
    """Tests for the async facade."""

    @pytest.mark.asyncio
    async def test_save_and_load_sqlite(self, sqlite_store):
        entry = make_entry({"id": "p1"}, timestamp=0)

        assert await sqlite_store.save("k", entry) is True
        loaded = await sqlite_store.load("k")

        assert loaded == entry

    @pytest.mark.asyncio
    async def test_save_and_load_flat(self, flat_store):
        entry = make_entry([1, 2, 3], timestamp=0)

        await flat_store.save("k", entry)

        assert (await flat_store.load("k")).data == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_flat_file_io_runs_off_the_event_loop(self, temp_dir, clock):
        threads = []

        class RecordingBackend(FlatFileBackend):
            def save(self, namespace, key, raw):
                threads.append(threading.get_ident())
                super().save(namespace, key, raw)

        backend = RecordingBackend(temp_dir / "cache.json")
        store = PersistentStore(backend, "products", schema_version="1", cache_time=1000, clock=clock)

        await store.save("k", make_entry("v"))

        assert threads and threads[0] != threading.get_ident()
        assert (await store.load("k")).data == "v"

    @pytest.mark.asyncio
    async def test_schema_mismatch_loads_as_absent(self, temp_dir, clock):
        backend = SQLiteBackend(temp_dir / "cache.db")
        old = PersistentStore(backend, "config", schema_version="1.0.0", cache_time=1000, clock=clock)
        new = PersistentStore(backend, "config", schema_version="1.1.0", cache_time=1000, clock=clock)
        await old.save("config_shop", make_entry({"theme": "dark"}, schema_version="1.0.0"))

        assert await new.load("config_shop") is None
        # Outdated entry is removed on read
        assert backend.load("config", "config_shop") is None

    @pytest.mark.asyncio
    async def test_expired_entry_loads_as_absent(self, sqlite_store, clock):
        await sqlite_store.save("k", make_entry("v", timestamp=0))
        clock.advance(1001)

        assert await sqlite_store.load("k") is None

    @pytest.mark.asyncio
    async def test_load_all_filters_unusable_entries(self, sqlite_store, clock):
        clock.advance(900)
        await sqlite_store.save("fresh", make_entry("a", timestamp=800))
        await sqlite_store.save("expired", make_entry("b", timestamp=-500))
        await sqlite_store.save("old_schema", make_entry("c", timestamp=800, schema_version="0"))

        entries = await sqlite_store.load_all()

        assert list(entries) == ["fresh"]

    @pytest.mark.asyncio
    async def test_quota_exceeded_purges_namespace_and_retries(self, temp_dir, clock):
        backend = FlatFileBackend(temp_dir / "cache.json", quota_bytes=700)
        store = PersistentStore(backend, "products", schema_version="1", cache_time=1000, clock=clock)
        await store.save("first", make_entry("x" * 300))

        saved = await store.save("second", make_entry("y" * 300))

        assert saved is True
        assert await store.load("first") is None
        assert (await store.load("second")).data == "y" * 300
        assert store.get_stats()["purges"] == 1

    @pytest.mark.asyncio
    async def test_quota_purge_spares_other_namespaces(self, temp_dir, clock):
        backend = FlatFileBackend(temp_dir / "cache.json", quota_bytes=1100)
        products = PersistentStore(backend, "products", schema_version="1", cache_time=1000, clock=clock)
        config = PersistentStore(backend, "config", schema_version="1", cache_time=1000, clock=clock)
        await config.save("config_shop", make_entry("c" * 300))
        await products.save("first", make_entry("x" * 300))

        await products.save("second", make_entry("y" * 300))

        assert (await config.load("config_shop")).data == "c" * 300
        assert await products.load("first") is None

    @pytest.mark.asyncio
    async def test_entry_larger_than_quota_is_dropped(self, temp_dir, clock):
        backend = FlatFileBackend(temp_dir / "cache.json", quota_bytes=100)
        store = PersistentStore(backend, "products", schema_version="1", cache_time=1000, clock=clock)

        assert await store.save("k", make_entry("z" * 500)) is False
        assert store.get_stats()["failures"] == 1

    @pytest.mark.asyncio
    async def test_unserializable_data_is_not_persisted(self, sqlite_store):
        entry = CacheEntry(data={"obj": object()}, timestamp=0, schema_version="1", content_hash="h")

        assert await sqlite_store.save("k", entry) is False
        assert await sqlite_store.load("k") is None

    @pytest.mark.asyncio
    async def test_remove_and_purge(self, sqlite_store):
        await sqlite_store.save("a", make_entry(1))
        await sqlite_store.save("b", make_entry(2))

        assert await sqlite_store.remove("a") is True
        assert await sqlite_store.purge() == 1
        assert await sqlite_store.load_all() == {}

    def test_create_prefers_sqlite(self, temp_dir):
        store = PersistentStore.create(temp_dir, "products", schema_version="1", cache_time=1000)
        assert store.backend_name == "sqlite"

    def test_create_honours_flat_backend(self, temp_dir):
        store = PersistentStore.create(
            temp_dir, "products", schema_version="1", cache_time=1000, backend="flat"
        )
        assert store.backend_name == "flat"


def test_flat_file_document_is_plain_json(temp_dir):
    """Entries are stored as serialized text under namespace/key."""
    path = temp_dir / "cache.json"
    FlatFileBackend(path).save("products", "k", make_entry("v").to_dict())

    document = json.loads(path.read_text(encoding="utf-8"))

    assert list(document) == ["products/k"]
    assert json.loads(document["products/k"])["schemaVersion"] == "1"
