#!/usr/bin/env python3
"""
Restoration/Resync Engine

The host throws away and re-renders nodes whenever it likes (partition
switch, scroll, edit). This engine puts the critical marker back on nodes
whose entries the history store (or the pending queue) says are critical.

restore_partition() sweeps everything visible. When some expected entries
are not on screen it arms a retry that fires on the next structural change,
with a timeout as safety net, up to MAX_RESTORE_RETRIES times. Entries still
missing after that are most likely scrolled out of view; they come back
through restore_node() when the host renders them.
"""

import logging
from typing import Dict, Optional, Tuple

from crit_ledger.core.config import EngineConfig
from crit_ledger.core.datashapes import ClassificationParams, RestorationReport
from crit_ledger.core.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from crit_ledger.core.event_emitter import EventEmitter, get_emitter
from crit_ledger.core.session import SessionContext
from crit_ledger.history.pending import PendingQueue
from crit_ledger.history.store import DurableHistoryStore, entry_content_key
from crit_ledger.identity.fingerprint import content_fingerprint, extract_external_id
from crit_ledger.identity.resolver import IdentityResolver
from crit_ledger.observer import filters
from crit_ledger.observer.scheduler import Scheduler, TimerHandle
from crit_ledger.observer.tree import ContentNode, LiveTree

logger = logging.getLogger(__name__)

THROTTLE_MAP_LIMIT = 500
THROTTLE_MAP_MAX_AGE = 1.0


class RestorationEngine:
    """Re-applies stored critical verdicts to freshly rendered nodes."""

    def __init__(self, tree: LiveTree, resolver: IdentityResolver,
                 store: DurableHistoryStore, pending: PendingQueue,
                 session: SessionContext, scheduler: Scheduler, config=EngineConfig,
                 error_handler: Optional[ErrorHandler] = None,
                 emitter: Optional[EventEmitter] = None):
        self.tree = tree
        self.resolver = resolver
        self.store = store
        self.pending = pending
        self.session = session
        self.scheduler = scheduler
        self.error_handler = error_handler or ErrorHandler()
        self.emitter = emitter or get_emitter()

        self.max_retries = config.MAX_RESTORE_RETRIES
        self.retry_timeout = config.RESTORE_TIMEOUT
        self.throttle = config.RESTORE_THROTTLE

        self._armed: Optional[Tuple[str, int]] = None
        self._timeout: Optional[TimerHandle] = None
        self._last_restore: Dict[str, float] = {}
        self.last_report: Optional[RestorationReport] = None

    # =========================================================================
    # PARTITION SWEEP
    # =========================================================================

    def _expected(self, partition_id: str):
        """Known-critical ids for the partition -> params, plus an author + body map."""
        expected: Dict[str, ClassificationParams] = {}
        by_content: Dict[str, Optional[str]] = {}
        for entry in self.store.critical_entries(partition_id):
            expected[entry.identity.value] = entry.params or ClassificationParams()
            key = entry_content_key(entry)
            if key:
                # two criticals sharing author + body cannot be told apart
                by_content[key] = None if key in by_content else entry.identity.value
        for staged in self.pending.identified_entries(partition_id):
            expected.setdefault(staged.identity.value, staged.params)
        return expected, by_content

    def _is_known(self, identity_value: str, partition_id: str) -> bool:
        """Whether the store or the pending queue already holds a verdict for this id."""
        if self.store.find(identity_value, partition_id) is not None:
            return True
        staged = self.pending.lookup(identity_value)
        return staged is not None and not staged.is_fingerprint_key

    def _match_exact(self, node: ContentNode, partition_id: str, expected) -> Tuple[Optional[str], bool]:
        """(expected id the node resolves to, whether its identity is a known entry)."""
        identity = self.resolver.resolve(node, self.session)
        if identity is None or identity.is_fingerprint:
            return None, False
        candidates = [identity.value]
        stripped = extract_external_id(identity.value, exclude=partition_id)
        if stripped and stripped != identity.value:
            candidates.append(stripped)
        for candidate in candidates:
            if candidate in expected:
                return candidate, True
        return None, any(self._is_known(candidate, partition_id) for candidate in candidates)

    @staticmethod
    def _match_content(node: ContentNode, by_content, matched) -> Optional[str]:
        text = (node.text or "").strip()
        author = (node.author_label or "").strip()
        if not text or not author:
            return None
        identity_value = by_content.get(content_fingerprint(author, text))
        if identity_value is None or identity_value in matched:
            return None
        return identity_value

    def _mark(self, node: ContentNode, identity_value: str, params: ClassificationParams,
              report: RestorationReport) -> None:
        if node.has_marker:
            report.already_marked += 1
        else:
            self.tree.apply_critical(node, params)
            report.restored += 1
        self.session.mark_critical([identity_value])
        self.session.processed.mark(identity_value)

    def restore_partition(self, partition_id, retry_count: int = 0) -> RestorationReport:
        """
        Sweep visible nodes and re-apply missing markers.

        Nodes are matched by identity first. Author + body matching is a
        second pass, limited to nodes whose identity the store and pending
        queue have never seen. A node that fails to read is skipped.
        """
        self._disarm()
        partition_id = None if partition_id is None else str(partition_id)
        report = RestorationReport(partition_id=partition_id, retry_count=retry_count)
        self.last_report = report

        if partition_id is None:
            return report

        expected, by_content, nodes = {}, {}, []
        with self.error_handler.create_context_manager(
            ErrorCategory.RESTORATION, ErrorSeverity.MEDIUM_ALERT,
            operation="restore_partition", context=partition_id
        ) as ctx:
            expected, by_content = self._expected(partition_id)
            report.expected = len(expected)
            if expected:
                nodes = list(self.tree.visible_nodes())
        if ctx.failed or not expected:
            return report

        matched = set()
        unknown_nodes = []
        for node in nodes:
            with self.error_handler.create_context_manager(
                ErrorCategory.RESTORATION, ErrorSeverity.LOW_DEBUG,
                operation="restore_partition_node", context=partition_id
            ) as node_ctx:
                if not filters.is_message_container(node):
                    continue
                identity_value, known = self._match_exact(node, partition_id, expected)
                if identity_value is None:
                    if known:
                        report.unresolved_nodes += 1
                    else:
                        unknown_nodes.append(node)
                    continue
                if identity_value in matched:
                    continue
                matched.add(identity_value)
                self._mark(node, identity_value, expected[identity_value], report)
            if node_ctx.failed:
                report.unresolved_nodes += 1

        for node in unknown_nodes:
            with self.error_handler.create_context_manager(
                ErrorCategory.RESTORATION, ErrorSeverity.LOW_DEBUG,
                operation="restore_partition_node", context=partition_id
            ) as node_ctx:
                identity_value = self._match_content(node, by_content, matched)
                if identity_value is None:
                    report.unresolved_nodes += 1
                    continue
                matched.add(identity_value)
                self._mark(node, identity_value, expected[identity_value], report)
            if node_ctx.failed:
                report.unresolved_nodes += 1

        report.missing_ids = sorted(set(expected) - matched)

        if report.restored:
            logger.info(f"Restored {report.restored} critical markers in {partition_id} "
                        f"({report.matched}/{report.expected} found)")

        if report.missing_ids:
            if retry_count < self.max_retries:
                self._arm(partition_id, retry_count + 1)
                report.retry_scheduled = True
                self.emitter.emit("restoration_retry", report.to_dict(), context_id=partition_id)
            else:
                report.exhausted = True
                logger.info(
                    f"{len(report.missing_ids)} critical entries in {partition_id} not visible after "
                    f"{retry_count} retries; they are likely off-screen and will be restored when rendered"
                )
                self.emitter.emit("restoration_incomplete", report.to_dict(), context_id=partition_id)
        return report

    def _arm(self, partition_id: str, retry_count: int) -> None:
        self._armed = (partition_id, retry_count)
        self._timeout = self.scheduler.call_later(self.retry_timeout, self._fire_retry)

    def _disarm(self) -> None:
        self._armed = None
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    def _fire_retry(self) -> None:
        armed = self._armed
        self._disarm()
        if armed is None:
            return
        partition_id, retry_count = armed
        if partition_id != self.session.partition_id:
            return
        self.restore_partition(partition_id, retry_count)

    @property
    def retry_armed(self) -> bool:
        return self._armed is not None

    def on_structural_change(self) -> None:
        """Fire an armed retry; called for every tree mutation."""
        if self._armed is not None:
            self._fire_retry()

    # =========================================================================
    # SINGLE NODE
    # =========================================================================

    def restore_node(self, node: ContentNode) -> bool:
        """Re-apply a stored verdict to one inserted node. Throttled per identity."""
        partition_id = self.session.partition_id
        if partition_id is None:
            return False

        restored = False
        with self.error_handler.create_context_manager(
            ErrorCategory.RESTORATION, ErrorSeverity.LOW_DEBUG, operation="restore_node"
        ):
            identity = self.resolver.resolve(node, self.session)
            if identity is None or self.session.is_partition_id(identity.value):
                return False

            now = self.scheduler.now()
            last = self._last_restore.get(identity.value)
            if last is not None and now - last < self.throttle:
                return False
            self._last_restore[identity.value] = now
            if len(self._last_restore) > THROTTLE_MAP_LIMIT:
                self._prune_throttle(now)

            params, exact = self._stored_params(node, identity.value, partition_id)
            if params is None:
                return False

            if not node.has_marker:
                self.tree.apply_critical(node, params)
                restored = True
                self.emitter.emit("node_restored", {"identity": identity.value}, context_id=partition_id)
            self.session.mark_critical([identity.value])
            if exact:
                self.session.processed.mark(identity.value)
        return restored

    def _stored_params(self, node: ContentNode, identity_value: str,
                       partition_id: str) -> Tuple[Optional[ClassificationParams], bool]:
        """
        Params to restore and whether they came from an exact id match.

        A known id always answers with its own verdict. Author + body is only
        consulted for an id nothing has seen, and only when exactly one
        critical entry matches and that entry is not already on screen.
        """
        entry = self.store.find(identity_value, partition_id)
        if entry is not None:
            return ((entry.params or ClassificationParams()) if entry.is_critical else None), True

        staged = self.pending.lookup(identity_value)
        if staged is not None and not staged.is_fingerprint_key:
            return staged.params, True

        text = (node.text or "").strip()
        author = (node.author_label or "").strip()
        if text and author:
            match = self.store.find_critical_by_content(author, text, partition_id)
            if match is not None and self.tree.node_for_identity(match.identity.value) is None:
                return match.params or ClassificationParams(), False
        return None, False

    def _prune_throttle(self, now: float) -> None:
        self._last_restore = {
            key: when for key, when in self._last_restore.items()
            if now - when < THROTTLE_MAP_MAX_AGE
        }

    def cancel(self) -> None:
        """Drop armed retries and throttle state (partition change, stop)."""
        self._disarm()
        self._last_restore.clear()
