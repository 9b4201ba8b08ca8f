"""
Key/Value Backend Tests

Covers the memory, SQLite and Redis backends behind the KeyValueStore
interface, plus graceful degradation when Redis is down: reads raise
StoreUnavailableError, writes return False.

Test Categories:
    1. Memory backend
    2. SQLite backend (tmp_path)
    3. Redis backend (fakeredis, connected and degraded)
    4. Backend selection
"""

import sqlite3

import pytest
from unittest.mock import MagicMock, patch

from crit_ledger.core.config import TestConfig
from crit_ledger.history.store import HISTORY_KEY, DurableHistoryStore
from crit_ledger.persistence.kv_store import (
    SCHEMA_VERSION,
    MemoryKeyValueStore,
    SQLiteKeyValueStore,
    StoreReadError,
    StoreUnavailableError,
    get_kv_store,
)

from crit_ledger.testing.conftest import make_entry


NS = "CriticalHit"


# =============================================================================
# 1. MEMORY BACKEND
# =============================================================================

class TestMemoryStore:

    def test_round_trip(self):
        store = MemoryKeyValueStore()
        assert store.save(NS, "settings", {"critChance": 12.5})
        assert store.load(NS, "settings") == {"critChance": 12.5}

    def test_missing_key_is_none(self):
        assert MemoryKeyValueStore().load(NS, "nope") is None

    def test_values_are_copies(self):
        store = MemoryKeyValueStore()
        value = {"a": [1, 2]}
        store.save(NS, "k", value)
        value["a"].append(3)
        assert store.load(NS, "k") == {"a": [1, 2]}

    def test_unencodable_value_rejected(self):
        store = MemoryKeyValueStore()
        assert store.save(NS, "k", {"bad": object()}) is False
        assert store.load(NS, "k") is None

    def test_corrupt_value_raises(self):
        store = MemoryKeyValueStore()
        store.save_raw(NS, "messageHistory", "{not json")
        with pytest.raises(StoreReadError) as exc:
            store.load(NS, "messageHistory")
        assert exc.value.key == "messageHistory"

    def test_keys_scoped_to_namespace(self):
        store = MemoryKeyValueStore()
        store.save(NS, "b", 1)
        store.save(NS, "a", 1)
        store.save("SkillTree", "bonuses", {})
        assert store.keys(NS) == ["a", "b"]

    def test_delete(self):
        store = MemoryKeyValueStore()
        store.save(NS, "k", 1)
        assert store.delete(NS, "k") is True
        assert store.delete(NS, "k") is False


# =============================================================================
# 2. SQLITE BACKEND
# =============================================================================

@pytest.mark.persistence
class TestSQLiteStore:

    @pytest.fixture
    def sqlite_store(self, tmp_path):
        return SQLiteKeyValueStore(tmp_path / "ledger.db")

    def test_round_trip(self, sqlite_store):
        """HAPPY PATH: Saved documents come back decoded."""
        history = [{"messageId": "900000000000000001", "isCrit": True}]
        assert sqlite_store.save(NS, "messageHistory", history)
        assert sqlite_store.load(NS, "messageHistory") == history

    def test_overwrite(self, sqlite_store):
        sqlite_store.save(NS, "settings", {"enabled": True})
        sqlite_store.save(NS, "settings", {"enabled": False})
        assert sqlite_store.load(NS, "settings") == {"enabled": False}
        assert sqlite_store.keys(NS) == ["settings"]

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "ledger.db"
        SQLiteKeyValueStore(path).save(NS, "settings", {"critChance": 20})
        assert SQLiteKeyValueStore(path).load(NS, "settings") == {"critChance": 20}

    def test_missing_key(self, sqlite_store):
        assert sqlite_store.load(NS, "settings") is None
        assert sqlite_store.updated_at(NS, "settings") is None

    def test_keys_and_delete(self, sqlite_store):
        sqlite_store.save(NS, "settings", {})
        sqlite_store.save(NS, "messageHistory", [])
        sqlite_store.save("SoloLevelingStats", "agilityBonus", {"bonus": 0.1})

        assert sqlite_store.keys(NS) == ["messageHistory", "settings"]
        assert sqlite_store.delete(NS, "settings") is True
        assert sqlite_store.delete(NS, "settings") is False
        assert sqlite_store.keys(NS) == ["messageHistory"]

    def test_updated_at_recorded(self, sqlite_store):
        sqlite_store.save(NS, "settings", {})
        assert sqlite_store.updated_at(NS, "settings")

    def test_corrupt_row_raises(self, sqlite_store):
        """EDGE: An undecodable row is reported, not silently treated as empty."""
        with sqlite3.connect(sqlite_store.db_path) as conn:
            conn.execute("INSERT INTO kv (namespace, key, value) VALUES (?, ?, ?)",
                         (NS, "messageHistory", "[{broken"))
        with pytest.raises(StoreReadError):
            sqlite_store.load(NS, "messageHistory")

    def test_schema_version(self, sqlite_store):
        with sqlite3.connect(sqlite_store.db_path) as conn:
            assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION

    def test_migrates_v1_database(self, tmp_path):
        """EDGE: A v1 file without updated_at gains the column on open."""
        path = tmp_path / "old.db"
        with sqlite3.connect(path) as conn:
            conn.execute("CREATE TABLE kv (namespace TEXT NOT NULL, key TEXT NOT NULL, value TEXT, "
                         "PRIMARY KEY (namespace, key))")
            conn.execute("INSERT INTO kv VALUES (?, ?, ?)", (NS, "settings", '{"enabled": true}'))
            conn.execute("PRAGMA user_version = 1")

        store = SQLiteKeyValueStore(path)

        assert store.load(NS, "settings") == {"enabled": True}
        with sqlite3.connect(path) as conn:
            columns = [row[1] for row in conn.execute("PRAGMA table_info(kv)").fetchall()]
        assert "updated_at" in columns

    def test_unencodable_value_rejected(self, sqlite_store):
        assert sqlite_store.save(NS, "k", {"bad": object()}) is False

    def test_read_failure_raises_unavailable(self, sqlite_store):
        """EDGE: A locked or unreadable database is not reported as a missing key."""
        with patch("crit_ledger.persistence.kv_store.sqlite3.connect",
                   side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(StoreUnavailableError):
                sqlite_store.load(NS, "messageHistory")


# =============================================================================
# 3. REDIS BACKEND
# =============================================================================

@pytest.mark.redis
class TestRedisStoreConnected:

    def test_round_trip(self, connected_redis_store):
        assert connected_redis_store.save(NS, "settings", {"critColor": "#00ff00"})
        assert connected_redis_store.load(NS, "settings") == {"critColor": "#00ff00"}

    def test_key_layout(self, connected_redis_store):
        connected_redis_store.save(NS, "settings", {})
        assert connected_redis_store._client.exists("crit_ledger:CriticalHit:settings")

    def test_keys_and_delete(self, connected_redis_store):
        connected_redis_store.save(NS, "settings", {})
        connected_redis_store.save(NS, "messageHistory", [])
        connected_redis_store.save("SkillTree", "bonuses", {})

        assert connected_redis_store.keys(NS) == ["messageHistory", "settings"]
        assert connected_redis_store.delete(NS, "settings") is True
        assert connected_redis_store.keys(NS) == ["messageHistory"]

    def test_corrupt_value_raises(self, connected_redis_store):
        connected_redis_store._client.set("crit_ledger:CriticalHit:messageHistory", "{oops")
        with pytest.raises(StoreReadError):
            connected_redis_store.load(NS, "messageHistory")

    def test_command_failure_raises_unavailable(self, connected_redis_store):
        """EDGE: A failed read is not reported as a missing key."""
        with patch.object(connected_redis_store._client, "get", side_effect=ConnectionError("reset")):
            with pytest.raises(StoreUnavailableError) as exc:
                connected_redis_store.load(NS, "settings")
        assert exc.value.key == "settings"

    @pytest.mark.critical
    def test_failed_read_never_overwrites_history(self, connected_redis_store, scheduler,
                                                  error_handler, emitter):
        """HAPPY PATH: History written before a read failure is still there after the next save."""
        connected_redis_store.save(TestConfig.NAMESPACE, HISTORY_KEY,
                                   [make_entry(n, is_critical=True).to_dict() for n in range(1, 6)])
        store = DurableHistoryStore(connected_redis_store, scheduler, TestConfig, error_handler, emitter)
        client = connected_redis_store._client
        real_get = client.get
        calls = {"n": 0}

        def get(name):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("reset")
            return real_get(name)

        with patch.object(client, "get", side_effect=get):
            store.load()
            store.upsert(make_entry(6, is_critical=True))
            store.flush()

        persisted = connected_redis_store.load(TestConfig.NAMESPACE, HISTORY_KEY)
        assert len(persisted) >= 5
        assert sum(1 for row in persisted if row["isCrit"]) == 6

    def test_lost_connection_detected(self, connected_redis_store):
        with patch.object(connected_redis_store._client, "ping", side_effect=ConnectionError("gone")):
            assert connected_redis_store.is_connected() is False
        assert connected_redis_store._connected is False


@pytest.mark.redis
class TestRedisStoreDegraded:

    def test_load_raises_unavailable(self, disconnected_redis_store):
        with pytest.raises(StoreUnavailableError):
            disconnected_redis_store.load(NS, "settings")

    def test_save_returns_false(self, disconnected_redis_store):
        """EDGE: Writes fail quietly; the history store keeps its in-memory copy."""
        assert disconnected_redis_store.save(NS, "settings", {}) is False

    def test_delete_and_keys(self, disconnected_redis_store):
        assert disconnected_redis_store.delete(NS, "settings") is False
        assert disconnected_redis_store.keys(NS) == []

    def test_not_available(self, disconnected_redis_store):
        assert disconnected_redis_store.is_available() is False

    def test_constructor_survives_refused_connection(self):
        from crit_ledger.persistence.redis_store import RedisKeyValueStore

        client = MagicMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch("redis.Redis", return_value=client):
            store = RedisKeyValueStore(host="nowhere")
        assert store.is_connected() is False


# =============================================================================
# 4. BACKEND SELECTION
# =============================================================================

class TestGetKvStore:

    def test_memory(self):
        assert isinstance(get_kv_store(TestConfig), MemoryKeyValueStore)

    def test_sqlite(self, tmp_path):
        class SQLiteConfig(TestConfig):
            STORE_BACKEND = "sqlite"
            DB_PATH = str(tmp_path / "picked.db")

        store = get_kv_store(SQLiteConfig)
        assert isinstance(store, SQLiteKeyValueStore)
        assert store.db_path == tmp_path / "picked.db"

    @pytest.mark.redis
    def test_redis(self):
        fakeredis = pytest.importorskip("fakeredis")
        from crit_ledger.persistence.redis_store import RedisKeyValueStore

        class RedisConfig(TestConfig):
            STORE_BACKEND = "redis"

        with patch("redis.Redis", fakeredis.FakeRedis):
            store = get_kv_store(RedisConfig)
        assert isinstance(store, RedisKeyValueStore)
        assert store.is_available()
