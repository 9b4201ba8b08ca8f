"""
Test Configuration and Fixtures

Shared fixtures for the resolver, classifier, history store, pending queue,
dispatch loop, restoration engine and key/value backends.

Everything runs on a ManualScheduler so timers (save throttling, batching,
requeues, restoration retries) fire only when a test advances the clock.
"""

import pytest
from unittest.mock import patch

from crit_ledger.classification.engine import ClassificationEngine
from crit_ledger.core.config import Settings, TestConfig
from crit_ledger.core.datashapes import ClassificationParams, EntityIdentity, HistoryEntry
from crit_ledger.core.error_handler import ErrorHandler
from crit_ledger.core.event_emitter import EventEmitter, EventTier
from crit_ledger.core.session import SessionContext
from crit_ledger.engine import CriticalHitEngine
from crit_ledger.history.pending import PendingQueue
from crit_ledger.history.store import DurableHistoryStore
from crit_ledger.identity.resolver import IdentityResolver
from crit_ledger.observer.scheduler import ManualScheduler
from crit_ledger.observer.tree import StaticNode, StaticTree
from crit_ledger.persistence.kv_store import MemoryKeyValueStore


# =============================================================================
# PYTEST MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "redis: uses the fakeredis backend")
    config.addinivalue_line("markers", "persistence: tests data persistence/survival")
    config.addinivalue_line("markers", "critical: must-pass tests for core invariants")


# =============================================================================
# KEY CONSTANTS
# =============================================================================

GROUP_ID = "111111111111111111"
PARTITION_ID = "222222222222222222"
OTHER_PARTITION_ID = "333333333333333333"
AUTHOR_ID = "444444444444444444"
LOCATION = f"https://host.example/channels/{GROUP_ID}/{PARTITION_ID}"
OTHER_LOCATION = f"https://host.example/channels/{GROUP_ID}/{OTHER_PARTITION_ID}"

ROLL_PATH = "crit_ledger.classification.engine.roll_for_seed"


def message_id(n: int) -> str:
    """Deterministic 18-digit host id."""
    return str(900000000000000000 + n)


def make_entry(n: int, partition_id: str = PARTITION_ID, is_critical: bool = False,
               timestamp: int = None, **kwargs) -> HistoryEntry:
    return HistoryEntry(
        identity=EntityIdentity.external(message_id(n)),
        partition_id=partition_id,
        timestamp=timestamp if timestamp is not None else 1_700_000_000_000 + n,
        is_critical=is_critical,
        params=ClassificationParams() if is_critical else None,
        group_id=kwargs.pop("group_id", GROUP_ID),
        **kwargs,
    )


def make_node(n: int = None, text: str = None, author: str = "alice",
              timestamp: str = "Today at 12:00", partition_id: str = PARTITION_ID, **kwargs) -> StaticNode:
    """Message node; with n it carries a composite list-item id and its own text."""
    if text is None:
        text = f"message number {n}" if n is not None else "hello there"
    attributes = kwargs.pop("attributes", {})
    if n is not None:
        attributes.setdefault("data-list-item-id", f"chat-messages___chat-messages-{partition_id}-{message_id(n)}")
    return StaticNode(classes=kwargs.pop("classes", ["message_abc", "cozy"]), attributes=attributes,
                      text=text, author=author, timestamp=timestamp, **kwargs)


class DetachedNode(StaticNode):
    """Node whose host element went away between the mutation and the read."""

    @property
    def class_names(self):
        raise RuntimeError("host node detached mid-read")


# =============================================================================
# CORE FIXTURES
# =============================================================================

@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def emitter():
    """Emitter that streams every tier so tests can observe debug events."""
    return EventEmitter(stream_tiers={EventTier.CRITICAL, EventTier.SYSTEM, EventTier.DEBUG})


@pytest.fixture
def error_handler():
    return ErrorHandler(debug_mode=True)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def session():
    return SessionContext(partition_id=PARTITION_ID, group_id=GROUP_ID, account_id=AUTHOR_ID)


@pytest.fixture
def classifier(kv_store, settings, error_handler, scheduler):
    return ClassificationEngine(kv_store, lambda: settings, error_handler, clock=scheduler.now)


@pytest.fixture
def store(kv_store, scheduler, error_handler, emitter):
    return DurableHistoryStore(kv_store, scheduler, TestConfig, error_handler, emitter)


@pytest.fixture
def pending(store, classifier, scheduler, error_handler, emitter):
    return PendingQueue(store, classifier, scheduler, TestConfig, error_handler, emitter)


@pytest.fixture
def resolver(error_handler):
    return IdentityResolver(error_handler=error_handler)


@pytest.fixture
def tree():
    return StaticTree(location=LOCATION, account_id=AUTHOR_ID)


@pytest.fixture
def engine(tree, kv_store, scheduler, error_handler, emitter):
    """Fully wired engine on the in-memory backend, not yet started."""
    return CriticalHitEngine(tree, kv_store=kv_store, config=TestConfig, scheduler=scheduler,
                             error_handler=error_handler, emitter=emitter)


@pytest.fixture
def force_critical():
    """Every roll lands at 0.0, below any positive chance."""
    with patch(ROLL_PATH, return_value=0.0) as mock:
        yield mock


@pytest.fixture
def force_non_critical():
    """Every roll lands at 99.99, above the 50% ceiling."""
    with patch(ROLL_PATH, return_value=99.99) as mock:
        yield mock


def events_of(emitter: EventEmitter, event_type: str):
    return emitter.get_recent_events(count=1000, event_type=event_type)


# =============================================================================
# REDIS FIXTURES
# =============================================================================

@pytest.fixture
def connected_redis_store():
    """
    RedisKeyValueStore with working fakeredis backend.

    Requires: pip install fakeredis
    """
    try:
        import fakeredis
    except ImportError:
        pytest.skip("fakeredis not installed - run: pip install fakeredis")

    from crit_ledger.persistence.redis_store import RedisKeyValueStore
    with patch('redis.Redis', fakeredis.FakeRedis):
        store = RedisKeyValueStore()
        store._connected = True
        store._client = fakeredis.FakeRedis(decode_responses=True)
        store._client.flushall()
        yield store


@pytest.fixture
def disconnected_redis_store():
    """RedisKeyValueStore in degraded mode; every operation returns a safe default."""
    from crit_ledger.persistence.redis_store import RedisKeyValueStore

    store = RedisKeyValueStore.__new__(RedisKeyValueStore)
    store.host = "localhost"
    store.port = 6379
    store.db = 0
    store.password = None
    store._client = None
    store._connected = False
    yield store
