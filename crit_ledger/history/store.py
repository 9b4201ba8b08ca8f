#!/usr/bin/env python3
"""
store.py - Durable History Store

The authoritative (identity, partition) -> classification map. One instance
per engine, persisted as a list of records under (namespace, "messageHistory").

Invariants:
    - at most one entry per (identity, partition)
    - a fingerprint identity never creates a new entry
    - global cap with a protected critical sub-cap; non-critical entries are
      evicted first, oldest first
    - per-partition cap applied after the global trim, same priority

Writes are throttled: a save request is debounced by SAVE_MIN_INTERVAL and
forced once the oldest queued change is SAVE_FORCE_INTERVAL old. flush()
writes immediately (shutdown, partition change). No write happens while
the last load could not read the backend.
"""

import logging
from collections import Counter
from typing import Dict, List, Optional, Tuple, Union

from crit_ledger.core.config import EngineConfig
from crit_ledger.core.datashapes import EntityIdentity, HistoryEntry
from crit_ledger.core.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from crit_ledger.core.event_emitter import EventEmitter, get_emitter
from crit_ledger.identity.fingerprint import content_fingerprint
from crit_ledger.observer.scheduler import ManualScheduler, Scheduler, TimerHandle
from crit_ledger.persistence.kv_store import (
    KeyValueStore,
    MemoryKeyValueStore,
    StoreReadError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

HISTORY_KEY = "messageHistory"

IdentityLike = Union[EntityIdentity, str]


def _value(identity: IdentityLike) -> str:
    return identity.value if isinstance(identity, EntityIdentity) else str(identity).strip()


def _partition(partition_id) -> Optional[str]:
    return None if partition_id is None else str(partition_id)


def entry_fingerprint(entry: HistoryEntry) -> Optional[str]:
    """Content fingerprint of a stored entry (author, body, timestamp), or None without author + body."""
    if not entry.body_preview or not entry.author_name:
        return None
    return content_fingerprint(entry.author_name, entry.body_preview, str(entry.timestamp))


def entry_content_key(entry: HistoryEntry) -> Optional[str]:
    """Author + body fingerprint of a stored entry, comparable with a rendered node."""
    if not entry.body_preview or not entry.author_name:
        return None
    return content_fingerprint(entry.author_name, entry.body_preview)


class DurableHistoryStore:
    """
    In-memory history with throttled persistence.

    Usage:
        store = DurableHistoryStore(kv_store, scheduler)
        store.load()
        store.upsert(entry)
        store.critical_entries("1234...")
        store.flush()
    """

    def __init__(self, kv_store: Optional[KeyValueStore] = None,
                 scheduler: Optional[Scheduler] = None,
                 config=EngineConfig,
                 error_handler: Optional[ErrorHandler] = None,
                 emitter: Optional[EventEmitter] = None,
                 namespace: Optional[str] = None):
        self.kv_store = kv_store or MemoryKeyValueStore()
        self.scheduler = scheduler or ManualScheduler()
        self.error_handler = error_handler or ErrorHandler()
        self.emitter = emitter or get_emitter()
        self.namespace = namespace or config.NAMESPACE

        self.max_history = config.MAX_HISTORY_SIZE
        self.max_critical = config.MAX_CRIT_HISTORY
        self.max_per_partition = config.MAX_HISTORY_PER_CHANNEL
        self.cache_ttl = config.CACHE_TTL
        self.save_min_interval = config.SAVE_MIN_INTERVAL
        self.save_force_interval = config.SAVE_FORCE_INTERVAL

        self._entries: List[HistoryEntry] = []
        self._index: Dict[Tuple[str, Optional[str]], HistoryEntry] = {}
        self._partition_counts: Counter = Counter()

        self._critical_cache: Optional[List[HistoryEntry]] = None
        self._critical_cache_time = 0.0

        self._dirty = False
        self._dirty_since: Optional[float] = None
        self._load_failed = False
        self._save_timer: Optional[TimerHandle] = None
        self.save_count = 0

    # =========================================================================
    # INDEX MAINTENANCE
    # =========================================================================

    def _rebuild_index(self) -> None:
        self._index = {entry.key(): entry for entry in self._entries}
        self._partition_counts = Counter(entry.partition_id for entry in self._entries)

    def _invalidate_cache(self) -> None:
        self._critical_cache = None

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # WRITES
    # =========================================================================

    def upsert(self, entry: HistoryEntry) -> Optional[HistoryEntry]:
        """
        Insert or update the entry for (identity, partition).

        Returns the stored entry, or None when a fingerprint identity had
        nothing to update.
        """
        entry.partition_id = _partition(entry.partition_id)
        existing = self._index.get(entry.key())

        if existing is None and entry.identity.is_external:
            existing = self._match_by_content(entry)
            if existing is not None:
                logger.debug(
                    f"Re-keying history entry {existing.identity.value} -> {entry.identity.value} "
                    f"(content match in {entry.partition_id})"
                )

        if existing is not None:
            position = self._entries.index(existing)
            if entry.body_preview is None:
                entry.body_preview = existing.body_preview
            if entry.author_name is None:
                entry.author_name = existing.author_name
            if entry.author_id is None:
                entry.author_id = existing.author_id
            if entry.group_id is None:
                entry.group_id = existing.group_id
            self._entries[position] = entry
            del self._index[existing.key()]
            self._index[entry.key()] = entry
            if existing.partition_id != entry.partition_id:
                self._partition_counts[existing.partition_id] -= 1
                self._partition_counts[entry.partition_id] += 1
        elif entry.identity.is_fingerprint:
            logger.debug(f"Not storing provisional identity {entry.identity.value}")
            return None
        else:
            self._entries.append(entry)
            self._index[entry.key()] = entry
            self._partition_counts[entry.partition_id] += 1

        self._invalidate_cache()

        if (len(self._entries) > self.max_history
                or self._partition_counts[entry.partition_id] > self.max_per_partition):
            self.trim()

        self.request_save()
        return entry if entry.key() in self._index else None

    def _match_by_content(self, entry: HistoryEntry) -> Optional[HistoryEntry]:
        """Same author, body and timestamp within the same partition and group, external ids only."""
        fingerprint = entry_fingerprint(entry)
        if fingerprint is None:
            return None
        for candidate in reversed(self._entries):
            if candidate.partition_id != entry.partition_id:
                continue
            if candidate.identity.is_fingerprint:
                continue
            if entry.group_id and candidate.group_id and entry.group_id != candidate.group_id:
                continue
            if entry_fingerprint(candidate) == fingerprint:
                return candidate
        return None

    def trim(self) -> int:
        """Apply the global and per-partition caps. Returns entries removed."""
        before = len(self._entries)

        if len(self._entries) > self.max_history:
            self._entries = self._select(self._entries, self.max_history)

        over = [p for p, n in Counter(e.partition_id for e in self._entries).items()
                if n > self.max_per_partition]
        if over:
            kept_by_partition = {}
            for partition_id in over:
                members = [e for e in self._entries if e.partition_id == partition_id]
                kept_by_partition[partition_id] = {
                    id(e) for e in self._select(members, self.max_per_partition)
                }
            self._entries = [
                e for e in self._entries
                if e.partition_id not in kept_by_partition or id(e) in kept_by_partition[e.partition_id]
            ]

        self._rebuild_index()
        self._invalidate_cache()

        removed = before - len(self._entries)
        if removed:
            logger.info(f"Trimmed {removed} history entries ({len(self._entries)} remain)")
            self.emitter.emit("history_trimmed", {"removed": removed, "remaining": len(self._entries)})
            self.request_save()
        return removed

    def _select(self, entries: List[HistoryEntry], budget: int) -> List[HistoryEntry]:
        """
        Keep the most recent criticals up to the critical sub-cap, fill the
        rest of the budget with the most recent non-criticals, and return
        them in chronological order.
        """
        ordered = sorted(entries, key=lambda e: e.timestamp)
        critical = [e for e in ordered if e.is_critical]
        non_critical = [e for e in ordered if not e.is_critical]

        crit_budget = min(len(critical), self.max_critical, budget)
        kept_critical = critical[len(critical) - crit_budget:]
        remaining = budget - len(kept_critical)
        kept_non_critical = non_critical[len(non_critical) - remaining:] if remaining > 0 else []

        kept = {id(e) for e in kept_critical}
        kept.update(id(e) for e in kept_non_critical)
        return [e for e in ordered if id(e) in kept]

    def cleanup_older_than(self, days: float) -> int:
        """Drop entries older than `days`. Returns entries removed."""
        cutoff = self.scheduler.wall_time_ms() - int(days * 86_400_000)
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.timestamp >= cutoff]
        removed = before - len(self._entries)
        if removed:
            self._rebuild_index()
            self._invalidate_cache()
            logger.info(f"Retention cleanup removed {removed} entries older than {days} days")
            self.emitter.emit("history_cleaned", {"removed": removed, "days": days})
            self.request_save()
        return removed

    def clear(self) -> None:
        self._entries = []
        self._rebuild_index()
        self._invalidate_cache()
        self.request_save()

    # =========================================================================
    # READS
    # =========================================================================

    def query(self, partition_id=None) -> List[HistoryEntry]:
        if partition_id is None:
            return list(self._entries)
        partition_id = _partition(partition_id)
        return [e for e in self._entries if e.partition_id == partition_id]

    def critical_entries(self, partition_id=None) -> List[HistoryEntry]:
        now = self.scheduler.now()
        if self._critical_cache is None or now - self._critical_cache_time >= self.cache_ttl:
            self._critical_cache = [e for e in self._entries if e.is_critical]
            self._critical_cache_time = now

        if partition_id is None:
            return list(self._critical_cache)
        partition_id = _partition(partition_id)
        return [e for e in self._critical_cache if e.partition_id == partition_id]

    def find(self, identity: IdentityLike, partition_id) -> Optional[HistoryEntry]:
        return self._index.get((_value(identity), _partition(partition_id)))

    def is_critical(self, identity: IdentityLike, partition_id) -> bool:
        entry = self.find(identity, partition_id)
        return bool(entry and entry.is_critical)

    def find_critical_by_content(self, author_name: str, body: str, partition_id) -> Optional[HistoryEntry]:
        """The single critical entry with this author + body; None when absent or ambiguous."""
        key = content_fingerprint(author_name, body)
        matches = [e for e in self.critical_entries(partition_id) if entry_content_key(e) == key]
        return matches[0] if len(matches) == 1 else None

    def stats(self) -> Dict:
        total = len(self._entries)
        critical = [e for e in self._entries if e.is_critical]
        per_partition = Counter(e.partition_id for e in critical)
        return {
            "total": total,
            "critical": len(critical),
            "crit_rate": round(len(critical) / total * 100, 2) if total else 0.0,
            "partitions": len(self._partition_counts),
            "critical_by_partition": dict(per_partition),
            "dirty": self._dirty,
            "load_failed": self._load_failed,
            "saves": self.save_count,
        }

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load(self) -> int:
        """
        Load history from the key/value store. An undecodable or non-list
        payload resets to an empty history; malformed rows are skipped.

        When the backend cannot be read at all, nothing is known about what
        it holds, so saves are held (load_failed) until a later load
        succeeds. Entries recorded in the meantime are merged into what
        that load returns.
        """
        payload, readable = self._read()
        if not readable:
            if not self._load_failed:
                logger.warning(f"History in {self.namespace}/{HISTORY_KEY} unreadable; "
                               f"holding saves until it can be read")
                self.emitter.emit("store_unavailable", {"namespace": self.namespace, "key": HISTORY_KEY})
            self._load_failed = True
            return len(self._entries)

        entries: List[HistoryEntry] = []
        seen: Dict[Tuple[str, Optional[str]], int] = {}
        skipped = 0
        for row in payload:
            entry = HistoryEntry.from_dict(row)
            if entry is None:
                skipped += 1
                continue
            if entry.key() in seen:
                entries[seen[entry.key()]] = entry
                continue
            seen[entry.key()] = len(entries)
            entries.append(entry)

        if skipped:
            logger.warning(f"Skipped {skipped} malformed history rows")

        recovered = self._load_failed
        if recovered:
            for entry in self._entries:
                if entry.key() in seen:
                    entries[seen[entry.key()]] = entry
                else:
                    seen[entry.key()] = len(entries)
                    entries.append(entry)
            logger.info(f"History readable again; merged {len(self._entries)} entries recorded meanwhile")

        self._load_failed = False
        self._entries = entries
        self._rebuild_index()
        self._invalidate_cache()

        if (len(self._entries) > self.max_history
                or any(n > self.max_per_partition for n in self._partition_counts.values())):
            self.trim()

        logger.info(f"Loaded {len(self._entries)} history entries "
                    f"({sum(1 for e in self._entries if e.is_critical)} critical)")
        return len(self._entries)

    def _read(self) -> Tuple[Optional[list], bool]:
        """(rows, readable). Corrupt payloads read as no rows."""
        payload = None
        with self.error_handler.create_context_manager(
            ErrorCategory.PERSISTENCE, ErrorSeverity.HIGH_DEGRADE, operation="load_history"
        ) as ctx:
            try:
                payload = self.kv_store.load(self.namespace, HISTORY_KEY)
            except StoreUnavailableError:
                raise
            except StoreReadError as e:
                self._report_corruption(e)
                return [], True
        if ctx.failed:
            return None, False

        if payload is not None and not isinstance(payload, list):
            self._report_corruption(TypeError(f"history payload is {type(payload).__name__}, expected list"))
            return [], True
        return payload or [], True

    def _report_corruption(self, error: Exception) -> None:
        self.error_handler.handle_error(
            error, ErrorCategory.STORE_CORRUPTION, ErrorSeverity.HIGH_DEGRADE, operation="load_history"
        )
        self.emitter.emit("store_corrupted", {"namespace": self.namespace, "key": HISTORY_KEY})

    @property
    def load_failed(self) -> bool:
        return self._load_failed

    def request_save(self) -> None:
        """Queue a throttled write."""
        now = self.scheduler.now()
        self._dirty = True
        if self._dirty_since is None:
            self._dirty_since = now

        if now - self._dirty_since >= self.save_force_interval:
            self._write()
            return

        if self._save_timer is not None:
            self._save_timer.cancel()
        self._save_timer = self.scheduler.call_later(self.save_min_interval, self._on_save_timer)

    def _on_save_timer(self) -> None:
        self._save_timer = None
        if self._dirty:
            self._write()

    def flush(self) -> bool:
        """Write immediately if anything is queued."""
        if self._save_timer is not None:
            self._save_timer.cancel()
            self._save_timer = None
        if not self._dirty:
            return True
        return self._write()

    def _write(self) -> bool:
        if self._save_timer is not None:
            self._save_timer.cancel()
            self._save_timer = None

        if self._load_failed:
            self.load()
            if self._load_failed:
                logger.warning(f"History in {self.namespace}/{HISTORY_KEY} still unreadable; save held")
                return False

        saved = False
        with self.error_handler.create_context_manager(
            ErrorCategory.PERSISTENCE, ErrorSeverity.MEDIUM_ALERT, operation="save_history"
        ):
            saved = self.kv_store.save(self.namespace, HISTORY_KEY, [e.to_dict() for e in self._entries])

        if saved:
            self._dirty = False
            self._dirty_since = None
            self.save_count += 1
            self.emitter.emit("history_saved", {"entries": len(self._entries)})
        else:
            logger.warning(f"History save to {self.namespace}/{HISTORY_KEY} failed; will retry on next change")
        return saved

    @property
    def dirty(self) -> bool:
        return self._dirty
