"""
Persistent storage tier for cache entries.

Two interchangeable backends sit behind one async PersistentStore:
- SQLiteBackend: versioned structured database (preferred)
- FlatFileBackend: flat string-keyed JSON document with a byte quota (fallback)

The backend is chosen once, at construction, by a capability probe.
Persistent writes are best-effort: the memory tier stays authoritative.
"""
import asyncio
import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .core import CacheEntry, Clock, now_ms
from .errors import PersistenceError, QuotaExceededError

logger = logging.getLogger("cache.persistence")

# Bump together with a new entry in SQLiteBackend._run_migrations
DB_SCHEMA_VERSION = 2

SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    schema_version TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_namespace ON cache_entries(namespace);
"""


class PersistentBackend(ABC):
    """
    Abstract durable key -> serialized entry storage.

    Backends are synchronous; PersistentStore decides whether a call runs
    inline or in a worker thread.
    """

    name: str = "backend"
    runs_in_thread: bool = False

    @abstractmethod
    def load(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        """Return the raw persisted entry dict, or None."""
        pass

    @abstractmethod
    def save(self, namespace: str, key: str, raw: Dict[str, Any]) -> None:
        """Persist a raw entry dict, replacing any previous value."""
        pass

    @abstractmethod
    def remove(self, namespace: str, key: str) -> bool:
        """Delete one entry. Returns True if it existed."""
        pass

    @abstractmethod
    def purge(self, namespace: str) -> int:
        """Delete every entry in a namespace. Returns the number deleted."""
        pass

    @abstractmethod
    def load_all(self, namespace: str) -> Dict[str, Dict[str, Any]]:
        """Return every raw entry in a namespace keyed by cache key."""
        pass


# =============================================================================
# Structured backend
# =============================================================================

class SQLiteBackend(PersistentBackend):
    """
    SQLite-backed structured store.

    Every call opens its own connection, so open or upgrade failures surface
    independently per call as PersistenceError.
    """

    name = "sqlite"
    runs_in_thread = True

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @classmethod
    def probe(cls, db_path: Path) -> bool:
        """Check whether a SQLite database can be opened at `db_path`."""
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(db_path))
            try:
                conn.execute("SELECT 1")
            finally:
                conn.close()
            return True
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"SQLite unavailable at {db_path}: {e}")
            return False

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            self._run_migrations(conn)
            conn.commit()

    def _run_migrations(self, conn: sqlite3.Connection):
        """Bring an older database up to DB_SCHEMA_VERSION."""
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        if version >= DB_SCHEMA_VERSION:
            return

        # v2: content hash column for no-op revalidation detection
        cursor = conn.execute("PRAGMA table_info(cache_entries)")
        columns = [row[1] for row in cursor.fetchall()]
        if "content_hash" not in columns:
            conn.execute("ALTER TABLE cache_entries ADD COLUMN content_hash TEXT")
            logger.info("Migrated cache_entries: added content_hash column")

        conn.execute(f"PRAGMA user_version = {DB_SCHEMA_VERSION}")

    @contextmanager
    def _get_connection(self):
        """Get a database connection, translating driver errors."""
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error on {self.db_path}: {e}") from e
        finally:
            conn.close()

    def load(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM cache_entries WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_raw(row)

    def save(self, namespace: str, key: str, raw: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (
                    namespace, key, data, timestamp, schema_version,
                    content_hash, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    namespace,
                    key,
                    json.dumps(raw["data"]),
                    raw["timestamp"],
                    raw["schemaVersion"],
                    raw.get("contentHash"),
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            conn.commit()

    def remove(self, namespace: str, key: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            conn.commit()
            return cursor.rowcount > 0

    def purge(self, namespace: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE namespace = ?", (namespace,)
            )
            conn.commit()
            return cursor.rowcount

    def load_all(self, namespace: str) -> Dict[str, Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM cache_entries WHERE namespace = ?", (namespace,)
            )
            return {row["key"]: self._row_to_raw(row) for row in cursor}

    def _row_to_raw(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to the raw entry dict."""
        return {
            "data": json.loads(row["data"]),
            "timestamp": row["timestamp"],
            "schemaVersion": row["schema_version"],
            "contentHash": row["content_hash"],
        }


# =============================================================================
# Fallback backend
# =============================================================================

class FlatFileBackend(PersistentBackend):
    """
    Flat string-keyed store kept in one JSON document on disk.

    Values are serialized entry text. Total document size is capped by
    `quota_bytes`; a write that would exceed it raises QuotaExceededError
    and leaves the store untouched. The document is re-read on every
    operation, so stores for different namespaces can share one file.
    """

    name = "flat"
    runs_in_thread = True
    # Read-modify-write cycles from worker threads share one file
    _write_lock = threading.Lock()

    def __init__(self, path: Path, quota_bytes: int = 5 * 1024 * 1024):
        self.path = path
        self.quota_bytes = quota_bytes

    def _read(self) -> Dict[str, str]:
        """Load the document, starting empty if it is missing or corrupt."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                items = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Discarding unreadable flat cache {self.path}: {e}")
            return {}
        if not isinstance(items, dict):
            return {}
        return {k: v for k, v in items.items() if isinstance(v, str)}

    @property
    def _items(self) -> Dict[str, str]:
        return self._read()

    def _flush(self, items: Dict[str, str]) -> None:
        """Atomically replace the document on disk."""
        text = json.dumps(items)
        if len(text.encode("utf-8")) > self.quota_bytes:
            raise QuotaExceededError(
                f"Flat cache {self.path} would exceed {self.quota_bytes} bytes"
            )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e

    @staticmethod
    def _item_key(namespace: str, key: str) -> str:
        return f"{namespace}/{key}"

    def load(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        text = self._items.get(self._item_key(namespace, key))
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt flat cache entry {key}: {e}") from e

    def save(self, namespace: str, key: str, raw: Dict[str, Any]) -> None:
        with self._write_lock:
            items = self._items
            items[self._item_key(namespace, key)] = json.dumps(raw)
            self._flush(items)

    def remove(self, namespace: str, key: str) -> bool:
        item_key = self._item_key(namespace, key)
        with self._write_lock:
            items = self._items
            if item_key not in items:
                return False
            del items[item_key]
            self._flush(items)
        return True

    def purge(self, namespace: str) -> int:
        prefix = f"{namespace}/"
        with self._write_lock:
            current = self._items
            items = {k: v for k, v in current.items() if not k.startswith(prefix)}
            removed = len(current) - len(items)
            if removed:
                self._flush(items)
        return removed

    def load_all(self, namespace: str) -> Dict[str, Dict[str, Any]]:
        prefix = f"{namespace}/"
        result = {}
        for item_key, text in self._items.items():
            if not item_key.startswith(prefix):
                continue
            try:
                result[item_key[len(prefix):]] = json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"Skipping corrupt flat cache entry: {item_key}")
        return result


# =============================================================================
# Async facade
# =============================================================================

class PersistentStore:
    """
    Async durable store for one cache namespace.

    Absorbs PersistenceError (logged, degrades to memory-only) and recovers
    from QuotaExceededError by purging the namespace and retrying once.
    Entries written under a different schema version, or already expired,
    load as absent.
    """

    def __init__(
        self,
        backend: PersistentBackend,
        namespace: str,
        schema_version: str,
        cache_time: int,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the store.

        Args:
            backend: Storage backend chosen by the capability probe
            namespace: Namespace isolating this resource's entries
            schema_version: Running schema version; mismatches load as absent
            cache_time: Age in ms after which persisted entries are ignored
            clock: Millisecond clock (defaults to wall clock)
        """
        self._backend = backend
        self._namespace = namespace
        self._schema_version = schema_version
        self._cache_time = cache_time
        self._clock = clock or now_ms
        self._stats = {
            "loads": 0,
            "saves": 0,
            "failures": 0,
            "purges": 0,
        }

    @classmethod
    def create(
        cls,
        directory: Path,
        namespace: str,
        schema_version: str,
        cache_time: int,
        backend: str = "auto",
        db_name: str = "storefront_cache.db",
        quota_bytes: int = 5 * 1024 * 1024,
        clock: Optional[Clock] = None,
    ) -> "PersistentStore":
        """
        Factory method selecting a backend by capability probe.

        Args:
            directory: Directory holding the database / flat file
            namespace: Namespace for this store
            schema_version: Running schema version
            cache_time: Entry lifetime in ms
            backend: "auto", "sqlite" or "flat"
            db_name: SQLite database file name
            quota_bytes: Byte quota for the flat backend
            clock: Millisecond clock

        Returns:
            Configured PersistentStore
        """
        db_path = directory / db_name
        if backend != "flat" and SQLiteBackend.probe(db_path):
            try:
                chosen: PersistentBackend = SQLiteBackend(db_path)
            except PersistenceError as e:
                logger.warning(f"SQLite backend failed to initialize: {e}")
                chosen = FlatFileBackend(directory / "storefront_cache.json", quota_bytes)
        else:
            if backend == "sqlite":
                logger.warning("SQLite requested but unavailable, using flat file store")
            chosen = FlatFileBackend(directory / "storefront_cache.json", quota_bytes)

        logger.info(f"Persistent store for '{namespace}' using {chosen.name} backend")
        return cls(chosen, namespace, schema_version, cache_time, clock=clock)

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def namespace(self) -> str:
        return self._namespace

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a backend call, off the event loop if the backend blocks."""
        if self._backend.runs_in_thread:
            return await asyncio.to_thread(fn, *args)
        return fn(*args)

    def _accept(self, key: str, raw: Dict[str, Any]) -> Optional[CacheEntry]:
        """Validate a raw persisted entry against version and age."""
        try:
            entry = CacheEntry.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed persisted entry {key}: {e}")
            return None

        if entry.schema_version != self._schema_version:
            logger.info(
                f"Ignoring persisted {key}: schema {entry.schema_version!r} "
                f"!= {self._schema_version!r}"
            )
            return None

        if entry.is_expired(self._clock(), self._cache_time):
            return None

        return entry

    async def load(self, key: str) -> Optional[CacheEntry]:
        """Load an entry, or None if absent, outdated, expired or unreadable."""
        try:
            raw = await self._call(self._backend.load, self._namespace, key)
        except PersistenceError as e:
            self._stats["failures"] += 1
            logger.warning(f"Persistent load failed for {key}: {e}")
            return None

        if raw is None:
            return None

        entry = self._accept(key, raw)
        if entry is None:
            await self.remove(key)
            return None

        self._stats["loads"] += 1
        return entry

    async def load_all(self) -> Dict[str, CacheEntry]:
        """Load every usable entry in the namespace."""
        try:
            raws = await self._call(self._backend.load_all, self._namespace)
        except PersistenceError as e:
            self._stats["failures"] += 1
            logger.warning(f"Persistent load_all failed for '{self._namespace}': {e}")
            return {}

        entries = {}
        for key, raw in raws.items():
            entry = self._accept(key, raw)
            if entry is not None:
                entries[key] = entry
        self._stats["loads"] += len(entries)
        return entries

    async def save(self, key: str, entry: CacheEntry) -> bool:
        """
        Persist an entry. Best-effort.

        Returns:
            True if the entry was written
        """
        raw = entry.to_dict()
        try:
            await self._call(self._backend.save, self._namespace, key, raw)
        except QuotaExceededError as e:
            logger.warning(f"Quota exceeded saving {key}, purging '{self._namespace}': {e}")
            await self.purge()
            try:
                await self._call(self._backend.save, self._namespace, key, raw)
            except PersistenceError as retry_error:
                self._stats["failures"] += 1
                logger.warning(f"Persistent save failed for {key} after purge: {retry_error}")
                return False
        except PersistenceError as e:
            self._stats["failures"] += 1
            logger.warning(f"Persistent save failed for {key}: {e}")
            return False
        except (TypeError, ValueError) as e:
            # Data that cannot be serialized stays memory-only
            self._stats["failures"] += 1
            logger.warning(f"Cannot serialize {key} for persistence: {e}")
            return False

        self._stats["saves"] += 1
        return True

    async def remove(self, key: str) -> bool:
        """Delete one entry. Best-effort."""
        try:
            return await self._call(self._backend.remove, self._namespace, key)
        except PersistenceError as e:
            self._stats["failures"] += 1
            logger.warning(f"Persistent remove failed for {key}: {e}")
            return False

    async def purge(self) -> int:
        """Delete every entry in this namespace. Best-effort."""
        try:
            count = await self._call(self._backend.purge, self._namespace)
        except PersistenceError as e:
            self._stats["failures"] += 1
            logger.warning(f"Persistent purge failed for '{self._namespace}': {e}")
            return 0
        self._stats["purges"] += 1
        logger.info(f"Purged {count} persisted entries from '{self._namespace}'")
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get persistence statistics."""
        return {
            "backend": self._backend.name,
            "namespace": self._namespace,
            **self._stats,
        }
