#!/usr/bin/env python3
"""
kv_store.py - Namespaced key/value persistence for settings and history

Everything the engine persists is a JSON document under (namespace, key):

    ("CriticalHit", "settings")        -> settings object
    ("CriticalHit", "messageHistory")  -> list of history records
    ("SoloLevelingStats", "agilityBonus") etc. are read-only bonus inputs

Storage Backend Architecture:
    MemoryKeyValueStore  - process-local dict, tests and embedders
    SQLiteKeyValueStore  - local file, default
    RedisKeyValueStore   - shared instance (see redis_store.py)
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Schema version - increment when schema changes
SCHEMA_VERSION = 2


class StoreReadError(Exception):
    """A stored value could not be read back."""

    def __init__(self, namespace: str, key: str, reason: str):
        super().__init__(f"{namespace}/{key}: {reason}")
        self.namespace = namespace
        self.key = key


class StoreUnavailableError(StoreReadError):
    """The backend could not be read, so nothing is known about the stored value."""


class KeyValueStore(ABC):
    """
    Abstract base for key/value backends.

    load() returns the decoded document or None when the key is absent.
    It raises StoreReadError when a stored value cannot be decoded and
    StoreUnavailableError when the backend itself cannot be read.
    save() returns True on success and never raises.
    """

    @abstractmethod
    def load(self, namespace: str, key: str) -> Any:
        pass

    @abstractmethod
    def save(self, namespace: str, key: str, value: Any) -> bool:
        pass

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        pass

    @abstractmethod
    def keys(self, namespace: str) -> List[str]:
        pass

    def is_available(self) -> bool:
        return True

    def get_name(self) -> str:
        """Human-readable backend name."""
        return self.__class__.__name__

    @staticmethod
    def _decode(namespace: str, key: str, raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            raise StoreReadError(namespace, key, f"undecodable JSON ({e})") from e


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store. Values are kept JSON-encoded like the real backends."""

    def __init__(self):
        self._data: Dict[Tuple[str, str], str] = {}

    def load(self, namespace: str, key: str) -> Any:
        return self._decode(namespace, key, self._data.get((namespace, key)))

    def save(self, namespace: str, key: str, value: Any) -> bool:
        try:
            self._data[(namespace, key)] = json.dumps(value)
            return True
        except (TypeError, ValueError) as e:
            logger.error(f"MemoryKeyValueStore save error for {namespace}/{key}: {e}")
            return False

    def save_raw(self, namespace: str, key: str, raw: str) -> None:
        """Store an already-encoded value as is."""
        self._data[(namespace, key)] = raw

    def delete(self, namespace: str, key: str) -> bool:
        return self._data.pop((namespace, key), None) is not None

    def keys(self, namespace: str) -> List[str]:
        return sorted(k for ns, k in self._data if ns == namespace)


class SQLiteKeyValueStore(KeyValueStore):
    """
    SQLite key/value store.

    - Context manager for connections
    - WAL mode for performance
    - Migration support via PRAGMA user_version
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = Path.home() / ".local" / "share" / "crit_ledger" / "crit_ledger.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()
        logger.info(f"SQLite key/value store initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode = WAL')
            yield conn
            conn.commit()
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def _init_schema(self):
        """Create tables and run migrations."""
        with self._get_connection() as conn:
            current_version = conn.execute("PRAGMA user_version").fetchone()[0]

            if current_version < SCHEMA_VERSION:
                logger.info(f"Migrating database from v{current_version} to v{SCHEMA_VERSION}")

                if current_version < 1:
                    self._migrate_v0_to_v1(conn)

                if current_version < 2:
                    self._migrate_v1_to_v2(conn)

                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                logger.info(f"Migration complete: now at v{SCHEMA_VERSION}")

    def _migrate_v0_to_v1(self, conn):
        """Initial schema creation."""
        conn.execute('''
            CREATE TABLE IF NOT EXISTS kv (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT,
                PRIMARY KEY (namespace, key)
            )
        ''')

    def _migrate_v1_to_v2(self, conn):
        """Track write times for the CLI and retention tooling."""
        columns = [row[1] for row in conn.execute("PRAGMA table_info(kv)").fetchall()]
        if 'updated_at' not in columns:
            conn.execute('ALTER TABLE kv ADD COLUMN updated_at TIMESTAMP')

    def load(self, namespace: str, key: str) -> Any:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    'SELECT value FROM kv WHERE namespace = ? AND key = ?', (namespace, key)
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailableError(namespace, key, f"SQLite read failed ({e})") from e
        return self._decode(namespace, key, row['value'] if row else None)

    def save(self, namespace: str, key: str, value: Any) -> bool:
        try:
            payload = json.dumps(value)
            with self._get_connection() as conn:
                conn.execute('''
                    INSERT INTO kv (namespace, key, value, updated_at) VALUES (?, ?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET
                        value = excluded.value, updated_at = excluded.updated_at
                ''', (namespace, key, payload, datetime.now().isoformat()))
            return True
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error(f"SQLite save error for {namespace}/{key}: {e}")
            return False

    def delete(self, namespace: str, key: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute('DELETE FROM kv WHERE namespace = ? AND key = ?', (namespace, key))
            return cursor.rowcount > 0

    def keys(self, namespace: str) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                'SELECT key FROM kv WHERE namespace = ? ORDER BY key', (namespace,)
            ).fetchall()
        return [row['key'] for row in rows]

    def updated_at(self, namespace: str, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT updated_at FROM kv WHERE namespace = ? AND key = ?', (namespace, key)
            ).fetchone()
        return row['updated_at'] if row else None


def get_kv_store(config) -> KeyValueStore:
    """Build the backend named by config.STORE_BACKEND."""
    backend = (config.STORE_BACKEND or 'memory').lower()

    if backend == 'sqlite':
        return SQLiteKeyValueStore(config.DB_PATH)

    if backend == 'redis':
        from crit_ledger.persistence.redis_store import RedisKeyValueStore
        store = RedisKeyValueStore(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            password=config.REDIS_PASSWORD,
        )
        if not store.is_available():
            logger.warning("Redis unavailable - history will not persist until it reconnects")
        return store

    return MemoryKeyValueStore()
