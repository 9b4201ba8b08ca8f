#!/usr/bin/env python3
"""
dispatch.py - Observer/Dispatch Loop

Watches the live tree for inserted content, batches it, and drives each
node through:

    UNCLASSIFIED -> RESOLVING -> CLASSIFIED_CRITICAL | CLASSIFIED_NON_CRITICAL -> PROCESSED

Nodes that only resolve to a content fingerprint are staged in the pending
queue (if critical) and requeued a bounded number of times, waiting for the
host to attach the real id. Critical verdicts are re-checked on screen two
frames later and then reported to on_classified listeners.
"""

import logging
from typing import Callable, Dict, List, Optional, Set

from crit_ledger.classification.engine import ClassificationEngine
from crit_ledger.core.config import EngineConfig, Settings
from crit_ledger.core.datashapes import (
    ClassificationParams,
    EntityIdentity,
    HistoryEntry,
    NodeState,
    PendingEntry,
)
from crit_ledger.core.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from crit_ledger.core.event_emitter import EventEmitter, get_emitter
from crit_ledger.core.session import SessionContext
from crit_ledger.history.pending import PendingQueue
from crit_ledger.history.store import DurableHistoryStore
from crit_ledger.identity.fingerprint import node_fingerprint, utf16_prefix
from crit_ledger.identity.resolver import IdentityResolver, parse_location
from crit_ledger.observer import filters
from crit_ledger.observer.scheduler import Scheduler, TimerHandle
from crit_ledger.observer.tree import ContentNode, LiveTree, Subscription

logger = logging.getLogger(__name__)


class ObserverDispatchLoop:
    """
    Single-threaded dispatcher. All partition-scoped timers go through
    _later() so a partition change can cancel them in one sweep.
    """

    def __init__(self, tree: LiveTree, resolver: IdentityResolver,
                 engine: ClassificationEngine, store: DurableHistoryStore,
                 pending: PendingQueue, session: SessionContext, scheduler: Scheduler,
                 config=EngineConfig, settings: Optional[Callable[[], Settings]] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 emitter: Optional[EventEmitter] = None):
        self.tree = tree
        self.resolver = resolver
        self.engine = engine
        self.store = store
        self.pending = pending
        self.session = session
        self.scheduler = scheduler
        self._settings = settings or (lambda: engine.settings)
        self.error_handler = error_handler or ErrorHandler()
        self.emitter = emitter or get_emitter()
        self.restoration = None

        self.batch_size = config.BATCH_SIZE
        self.batch_spacing = config.BATCH_SPACING
        self.max_node_attempts = config.MAX_NODE_ATTEMPTS
        self.requeue_delay = config.REQUEUE_DELAY
        self.attach_retry_delay = config.ATTACH_RETRY_DELAY
        self.attach_max_delay = config.ATTACH_MAX_DELAY
        self.attach_max_attempts = config.ATTACH_MAX_ATTEMPTS
        self.settle_delay = config.SETTLE_DELAY

        self._subscription: Optional[Subscription] = None
        self._attach_attempts = 0
        self._queue: List[ContentNode] = []
        self._queued: Set[int] = set()
        self._attempts: Dict[int, int] = {}
        self._batch_timer: Optional[TimerHandle] = None
        self._last_batch_at: Optional[float] = None
        self._last_stamp = 0
        self._timers: Set[TimerHandle] = set()
        self.node_states: Dict[int, NodeState] = {}

        self.stats = {
            "processed": 0,
            "critical": 0,
            "filtered": 0,
            "requeued": 0,
            "rejected": 0,
        }

    @property
    def settings(self) -> Settings:
        return self._settings()

    @property
    def attached(self) -> bool:
        return self._subscription is not None

    # =========================================================================
    # TIMERS
    # =========================================================================

    def _later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle: Optional[TimerHandle] = None

        def run():
            self._timers.discard(handle)
            callback()

        handle = self.scheduler.call_later(delay, run)
        self._timers.add(handle)
        return handle

    def _frames_later(self, callback: Callable[[], None]) -> TimerHandle:
        handle: Optional[TimerHandle] = None

        def run():
            self._timers.discard(handle)
            callback()

        handle = self.scheduler.defer_frames(run, 2)
        self._timers.add(handle)
        return handle

    def cancel_timers(self) -> None:
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self._batch_timer = None

    # =========================================================================
    # ATTACH / DETACH
    # =========================================================================

    def attach(self) -> bool:
        """Subscribe to the watch target, retrying with backoff if it is absent."""
        target = None
        with self.error_handler.create_context_manager(
            ErrorCategory.OBSERVER_ATTACH, ErrorSeverity.MEDIUM_ALERT, operation="find_watch_target"
        ):
            target = self.tree.find_watch_target()

        if target is None:
            self._attach_attempts += 1
            if self._attach_attempts >= self.attach_max_attempts:
                self.error_handler.handle_error(
                    LookupError(f"watch target not found after {self._attach_attempts} attempts"),
                    ErrorCategory.OBSERVER_ATTACH, ErrorSeverity.HIGH_DEGRADE, operation="attach"
                )
                return False
            delay = min(self.attach_max_delay,
                        self.attach_retry_delay * (2 ** (self._attach_attempts - 1)))
            self.emitter.emit("observer_attach_retry",
                              {"attempt": self._attach_attempts, "delay": delay},
                              context_id=self.session.partition_id)
            self._later(delay, self.attach)
            return False

        self.detach()
        with self.error_handler.create_context_manager(
            ErrorCategory.OBSERVER_ATTACH, ErrorSeverity.MEDIUM_ALERT, operation="subscribe"
        ) as ctx:
            self._subscription = self.tree.subscribe(target, self.on_mutation)
        if ctx.failed:
            self._subscription = None
            return False
        self._attach_attempts = 0
        logger.info(f"Observer attached for partition {self.session.partition_id}")
        self.emitter.emit("observer_attached", {"partition_id": self.session.partition_id},
                          context_id=self.session.partition_id)
        return True

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    # =========================================================================
    # MUTATIONS AND BATCHING
    # =========================================================================

    def on_mutation(self, inserted: List[ContentNode]) -> None:
        """Structural-change callback from the tree."""
        if self.restoration is not None:
            self.restoration.on_structural_change()

        if not self.settings.enabled:
            return

        for raw in inserted:
            with self.error_handler.create_context_manager(
                ErrorCategory.DISPATCH, ErrorSeverity.LOW_DEBUG,
                operation="on_mutation", context=self.session.partition_id or ""
            ):
                node = filters.message_container(raw)
                if node is None:
                    continue
                if self.restoration is not None:
                    self.restoration.restore_node(node)
                if filters.passes_prefilter(node):
                    self.enqueue(node)

    def enqueue(self, node: ContentNode) -> None:
        key = id(node)
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(node)
        self.node_states.setdefault(key, NodeState.UNCLASSIFIED)
        self._schedule_batch()

    def _schedule_batch(self) -> None:
        if self._batch_timer is not None and self._batch_timer.active:
            return
        delay = 0.0
        if self._last_batch_at is not None:
            delay = max(0.0, self._last_batch_at + self.batch_spacing - self.scheduler.now())
        self._batch_timer = self._later(delay, self._run_batch)

    def _run_batch(self) -> None:
        self._batch_timer = None
        self._last_batch_at = self.scheduler.now()
        batch = self._queue[:self.batch_size]
        self._queue = self._queue[self.batch_size:]
        for node in batch:
            self._queued.discard(id(node))
            self.process_node(node)
        if self._queue:
            self._schedule_batch()

    # =========================================================================
    # PER-NODE PROCESSING
    # =========================================================================

    def process_node(self, node: ContentNode) -> NodeState:
        """Drive one node through classification. Faults skip the node."""
        key = id(node)
        state = NodeState.UNCLASSIFIED

        with self.error_handler.create_context_manager(
            ErrorCategory.DISPATCH, ErrorSeverity.LOW_DEBUG, operation="process_node"
        ) as ctx:
            state = self._process(node)

        if ctx.failed:
            state = NodeState.UNCLASSIFIED

        self.node_states[key] = state
        return state

    def _process(self, node: ContentNode) -> NodeState:
        if not self.settings.enabled or not node.is_connected:
            return NodeState.UNCLASSIFIED

        if filters.should_filter(node, self.settings):
            self.stats["filtered"] += 1
            return NodeState.PROCESSED

        identity = self.resolver.resolve(node, self.session)
        if identity is None:
            return NodeState.UNCLASSIFIED

        if self.session.is_partition_id(identity.value):
            self.stats["rejected"] += 1
            return NodeState.UNCLASSIFIED

        if identity.is_fingerprint:
            return self._handle_provisional(node, identity)

        if not self.session.try_begin(identity.value):
            return NodeState.PROCESSED
        self.node_states[id(node)] = NodeState.RESOLVING

        try:
            state = self._classify_external(node, identity)
        except Exception:
            self.session.finish(identity.value, processed=False)
            raise
        self.session.finish(identity.value)
        self._attempts.pop(id(node), None)
        self.stats["processed"] += 1
        return state

    def _stamp(self) -> int:
        """Wall-clock milliseconds, strictly increasing across records from this loop."""
        self._last_stamp = max(self.scheduler.wall_time_ms(), self._last_stamp + 1)
        return self._last_stamp

    def _node_details(self, node: ContentNode):
        text = (node.text or "").strip()
        author = (node.author_label or "").strip()
        timestamp_label = node.timestamp_label or ""
        return text, author, timestamp_label

    def _handle_provisional(self, node: ContentNode, identity: EntityIdentity) -> NodeState:
        """Fingerprint-only node: stage a critical verdict and wait for the real id."""
        text, author, timestamp_label = self._node_details(node)
        partition_id = self.session.partition_id

        if self.pending.lookup(identity.value) is None:
            author_id = self.resolver.get_author_identity(node)
            verdict = self.engine.classify(identity, partition_id, author_id, text, author, timestamp_label)
            if verdict.is_critical:
                self.pending.stage(identity, True, PendingEntry(
                    identity=identity,
                    params=self.engine.current_params(),
                    timestamp=self.scheduler.now(),
                    partition_id=partition_id,
                    body_preview=utf16_prefix(text),
                    author_name=author or None,
                    author_id=author_id,
                    group_id=self.session.group_id,
                    fingerprint=identity.value,
                    timestamp_label=timestamp_label,
                    entry_timestamp=self._stamp(),
                ), self.session)

        attempts = self._attempts.get(id(node), 0) + 1
        self._attempts[id(node)] = attempts
        if attempts < self.max_node_attempts:
            self.stats["requeued"] += 1
            self.emitter.emit("node_requeued", {"fingerprint": identity.value, "attempt": attempts},
                              context_id=partition_id)
            self._later(self.requeue_delay * attempts, lambda: self.enqueue(node))
        else:
            self._attempts.pop(id(node), None)
            logger.debug(f"Giving up on provisional node {identity.value} after {attempts} attempts")
        return NodeState.UNCLASSIFIED

    def _classify_external(self, node: ContentNode, identity: EntityIdentity) -> NodeState:
        text, author, timestamp_label = self._node_details(node)
        partition_id = self.session.partition_id

        existing = self.store.find(identity, partition_id)
        if existing is None:
            fingerprint = node_fingerprint(text, author, timestamp_label) if text else None
            self.pending.reconcile(identity, fingerprint)
            existing = self.store.find(identity, partition_id)

        if existing is not None:
            if existing.is_critical:
                self._confirm_critical(node, identity, existing.params or self.engine.current_params(),
                                       existing.author_id)
                return NodeState.CLASSIFIED_CRITICAL
            return NodeState.CLASSIFIED_NON_CRITICAL

        author_id = self.resolver.get_author_identity(node)
        verdict = self.engine.classify(identity, partition_id, author_id, text, author, timestamp_label)
        params = self.engine.current_params() if verdict.is_critical else None

        self.store.upsert(HistoryEntry(
            identity=identity,
            partition_id=partition_id,
            group_id=self.session.group_id,
            timestamp=self._stamp(),
            is_critical=verdict.is_critical,
            params=params,
            body_preview=utf16_prefix(text) if text else None,
            author_name=author or None,
            author_id=author_id,
        ))

        if verdict.is_critical:
            self._confirm_critical(node, identity, params, author_id)
            return NodeState.CLASSIFIED_CRITICAL
        return NodeState.CLASSIFIED_NON_CRITICAL

    def _confirm_critical(self, node: ContentNode, identity: EntityIdentity,
                          params: ClassificationParams, author_id: Optional[str] = None) -> None:
        """Apply now, re-check two frames later, then report."""
        self.session.mark_critical([identity.value])
        self.stats["critical"] += 1
        if not node.has_marker:
            self.tree.apply_critical(node, params)
        partition_id = self.session.partition_id
        own_content = self.session.is_own(author_id)

        def confirm():
            target = node
            if not target.is_connected:
                target = self.tree.node_for_identity(identity.value)
            if target is None:
                return
            if not target.has_marker:
                self.tree.apply_critical(target, params)
            self.emitter.emit("critical_classified", {
                "identity": identity.value,
                "is_critical": True,
                "params": params,
                "own_content": own_content,
            }, context_id=partition_id, subject=target)

        self._frames_later(confirm)

    # =========================================================================
    # PARTITION CHANGE
    # =========================================================================

    def on_partition_change(self) -> None:
        """
        Host navigated to another partition: persist, drop session tracking,
        keep the store, then re-attach and restore once the new view settles.
        """
        group_id, partition_id = parse_location(self.tree.location())
        previous = self.session.partition_id
        logger.info(f"Partition change {previous} -> {partition_id}")

        self.store.flush()
        self.cancel_timers()
        self.detach()
        self._queue = []
        self._queued.clear()
        self._attempts.clear()
        self.node_states.clear()
        self.pending.clear()
        if self.restoration is not None:
            self.restoration.cancel()
        self.session.move_to(partition_id, group_id)

        self.emitter.emit("partition_changed", {"from": previous, "to": partition_id},
                          context_id=partition_id)

        def settle():
            self.attach()
            if self.restoration is not None and self.session.partition_id is not None:
                self.restoration.restore_partition(self.session.partition_id)

        self._later(self.settle_delay, settle)
