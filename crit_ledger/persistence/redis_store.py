"""
Redis Key/Value Store

Redis implementation of KeyValueStore for installs that share history
between processes. Gracefully degrades if Redis is unavailable: reads
raise StoreUnavailableError and writes return False until a reconnect
succeeds.

Usage:
    from crit_ledger.persistence.redis_store import RedisKeyValueStore
    store = RedisKeyValueStore(host="localhost")
    store.save("CriticalHit", "settings", {...})
"""

import json
import logging
from typing import Any, List, Optional

import redis

from crit_ledger.persistence.kv_store import KeyValueStore, StoreUnavailableError

logger = logging.getLogger(__name__)

# Key prefix for namespacing
KEY_PREFIX = "crit_ledger:"


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed key/value store.

    Keys are laid out as crit_ledger:<namespace>:<key> with JSON string values.
    """

    def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0,
                 password: Optional[str] = None, client=None):
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._client = client
        self._connected = client is not None
        if client is None:
            self._connect()

    def _connect(self):
        """Attempt to connect to Redis."""
        try:
            self._client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self._client.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self.host}:{self.port}")
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}. Operating in degraded mode.")
            self._connected = False

    def is_connected(self) -> bool:
        """Check if Redis is available."""
        if not self._connected or self._client is None:
            return False
        try:
            self._client.ping()
            return True
        except Exception:
            self._connected = False
            return False

    def is_available(self) -> bool:
        return self.is_connected()

    def reconnect(self) -> bool:
        """Attempt to reconnect to Redis."""
        self._connect()
        return self._connected

    @staticmethod
    def _key(namespace: str, key: str) -> str:
        return f"{KEY_PREFIX}{namespace}:{key}"

    def load(self, namespace: str, key: str) -> Any:
        if not self.is_connected():
            raise StoreUnavailableError(namespace, key, "Redis is not connected")

        try:
            raw = self._client.get(self._key(namespace, key))
        except Exception as e:
            logger.error(f"Redis load error: {e}")
            raise StoreUnavailableError(namespace, key, f"Redis read failed ({e})") from e

        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        return self._decode(namespace, key, raw)

    def save(self, namespace: str, key: str, value: Any) -> bool:
        if not self.is_connected():
            return False

        try:
            self._client.set(self._key(namespace, key), json.dumps(value))
            return True
        except Exception as e:
            logger.error(f"Redis save error: {e}")
            return False

    def delete(self, namespace: str, key: str) -> bool:
        if not self.is_connected():
            return False

        try:
            return bool(self._client.delete(self._key(namespace, key)))
        except Exception as e:
            logger.error(f"Redis delete error: {e}")
            return False

    def keys(self, namespace: str) -> List[str]:
        if not self.is_connected():
            return []

        prefix = self._key(namespace, "")
        try:
            found = []
            for raw in self._client.scan_iter(match=f"{prefix}*"):
                name = raw.decode('utf-8') if isinstance(raw, bytes) else raw
                found.append(name[len(prefix):])
            return sorted(found)
        except Exception as e:
            logger.error(f"Redis keys error: {e}")
            return []
