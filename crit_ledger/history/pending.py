"""
Pending Queue

Holds critical verdicts reached before the entry's authoritative external
id was known. A staged verdict is only committed to the history store after
reconcile() re-classifies it with the real identity; a verdict that fails
that check is discarded and the entry is stored as non-critical.
"""

import logging
from typing import Dict, List, Optional, Tuple

from crit_ledger.classification.engine import ClassificationEngine
from crit_ledger.core.config import EngineConfig
from crit_ledger.core.datashapes import EntityIdentity, HistoryEntry, PendingEntry
from crit_ledger.core.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from crit_ledger.core.event_emitter import EventEmitter, get_emitter
from crit_ledger.history.store import DurableHistoryStore
from crit_ledger.observer.scheduler import Scheduler

logger = logging.getLogger(__name__)


class ReconciliationMismatch(Exception):
    """A staged critical verdict did not survive re-classification."""


class PendingQueue:
    """Staged verdicts keyed by identity value, bounded and short-lived."""

    def __init__(self, store: DurableHistoryStore, engine: ClassificationEngine,
                 scheduler: Scheduler, config=EngineConfig,
                 error_handler: Optional[ErrorHandler] = None,
                 emitter: Optional[EventEmitter] = None):
        self.store = store
        self.engine = engine
        self.scheduler = scheduler
        self.error_handler = error_handler or ErrorHandler()
        self.emitter = emitter or get_emitter()
        self.max_size = config.MAX_PENDING
        self.ttl_identified = config.PENDING_TTL_IDENTIFIED
        self.ttl_fingerprint = config.PENDING_TTL_FINGERPRINT
        # key -> (entry, staged under a fingerprint key)
        self._slots: Dict[str, Tuple[PendingEntry, bool]] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def stage(self, identity: EntityIdentity, is_fingerprint_key: bool,
              entry: PendingEntry, context=None) -> None:
        """
        Record a verdict under `identity` and, when the entry carries a
        content fingerprint, under that fingerprint too.
        """
        entry.identity = identity
        entry.is_fingerprint_key = is_fingerprint_key
        if entry.partition_id is None and context is not None:
            entry.partition_id = context.partition_id
        if entry.group_id is None and context is not None:
            entry.group_id = context.group_id

        self._slots[identity.value] = (entry, is_fingerprint_key)
        if entry.fingerprint and entry.fingerprint != identity.value:
            self._slots[entry.fingerprint] = (entry, True)

        if len(self._slots) > self.max_size:
            self._evict_oldest()

    def _evict_oldest(self) -> None:
        """Drop the oldest 30% of slots."""
        ordered = sorted(self._slots.items(), key=lambda item: item[1][0].timestamp)
        drop = max(1, int(len(ordered) * 0.3))
        for key, _ in ordered[:drop]:
            del self._slots[key]
        logger.debug(f"Pending queue overflow: evicted {drop} oldest entries")

    def _expired(self, entry: PendingEntry, is_fingerprint_key: bool, now: float) -> bool:
        ttl = self.ttl_fingerprint if is_fingerprint_key else self.ttl_identified
        return now - entry.timestamp > ttl

    def lookup(self, identity_value: str) -> Optional[PendingEntry]:
        slot = self._slots.get(identity_value)
        if slot is None:
            return None
        entry, is_fingerprint_key = slot
        if self._expired(entry, is_fingerprint_key, self.scheduler.now()):
            del self._slots[identity_value]
            return None
        return entry

    def identified_entries(self, partition_id=None) -> List[PendingEntry]:
        """Unexpired entries staged under an external id."""
        now = self.scheduler.now()
        found = []
        for key, (entry, is_fingerprint_key) in self._slots.items():
            if is_fingerprint_key or self._expired(entry, False, now):
                continue
            if partition_id is not None and entry.partition_id != str(partition_id):
                continue
            found.append(entry)
        return found

    def purge_expired(self) -> int:
        now = self.scheduler.now()
        expired = [key for key, (entry, fp) in self._slots.items() if self._expired(entry, fp, now)]
        for key in expired:
            del self._slots[key]
        return len(expired)

    def clear(self) -> None:
        self._slots.clear()

    def _discard(self, entry: PendingEntry) -> None:
        for key in [k for k, (e, _) in self._slots.items() if e is entry]:
            del self._slots[key]

    def reconcile(self, external_identity: EntityIdentity,
                  fingerprint: Optional[str] = None) -> Optional[PendingEntry]:
        """
        Commit a staged verdict now that its external id is known.

        Returns the entry when the verdict survived re-classification and was
        stored as critical, None when nothing was staged or it was discarded.
        """
        entry = self.lookup(external_identity.value)
        if entry is None and fingerprint:
            entry = self.lookup(fingerprint)
        if entry is None:
            return None

        self._discard(entry)

        verdict = self.engine.classify(
            external_identity,
            entry.partition_id,
            entry.author_id,
            entry.body_preview,
            entry.author_name or "",
            entry.timestamp_label or "",
        )

        timestamp = entry.entry_timestamp or self.scheduler.wall_time_ms()
        history = HistoryEntry(
            identity=external_identity,
            partition_id=entry.partition_id,
            group_id=entry.group_id,
            timestamp=timestamp,
            is_critical=verdict.is_critical,
            params=entry.params if verdict.is_critical else None,
            body_preview=entry.body_preview,
            author_name=entry.author_name,
            author_id=entry.author_id,
        )

        if not verdict.is_critical:
            self.error_handler.handle_error(
                ReconciliationMismatch(
                    f"staged critical for {entry.identity.value} re-rolled {verdict.roll:.2f} "
                    f">= {verdict.effective_chance:.2f}"
                ),
                ErrorCategory.RECONCILIATION, ErrorSeverity.LOW_DEBUG,
                operation="reconcile", suppress_duplicate_seconds=0
            )
            self.emitter.emit("pending_discarded", {
                "identity": external_identity.value,
                "staged_as": entry.identity.value,
                "roll": verdict.roll,
                "chance": verdict.effective_chance,
            }, context_id=entry.partition_id)
            self.store.upsert(history)
            return None

        self.store.upsert(history)
        logger.debug(f"Reconciled {entry.identity.value} -> {external_identity.value} (critical)")
        return entry
