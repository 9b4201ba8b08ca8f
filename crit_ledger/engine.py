#!/usr/bin/env python3
"""
engine.py - CriticalHitEngine

Wires the pieces into one running instance:
- IdentityResolver (what is this node?)
- ClassificationEngine (is it critical?)
- DurableHistoryStore + PendingQueue (remember the verdict)
- ObserverDispatchLoop (watch the tree, drive classification)
- RestorationEngine (re-apply verdicts when the host re-renders)

Usage:
    engine = CriticalHitEngine(tree)
    engine.on_classified(lambda node, is_crit, params: ...)
    engine.start()
    ...
    engine.check_location()   # call when the host navigates
    engine.stop()
"""

import atexit
import logging
from typing import Any, Callable, Dict, List, Optional

from crit_ledger.classification.engine import ClassificationEngine
from crit_ledger.core.config import Settings, get_config
from crit_ledger.core.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from crit_ledger.core.event_emitter import EventEmitter, get_emitter
from crit_ledger.core.session import SessionContext
from crit_ledger.history.pending import PendingQueue
from crit_ledger.history.store import DurableHistoryStore
from crit_ledger.identity.resolver import IdentityResolver, parse_location
from crit_ledger.observer import filters
from crit_ledger.observer.dispatch import ObserverDispatchLoop
from crit_ledger.observer.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from crit_ledger.observer.tree import ContentNode, LiveTree
from crit_ledger.persistence.kv_store import KeyValueStore, get_kv_store
from crit_ledger.recovery.restoration import RestorationEngine

logger = logging.getLogger(__name__)


class CriticalHitEngine:
    """One engine per host view. Single-threaded; all work runs on the scheduler."""

    def __init__(self, tree: LiveTree, kv_store: Optional[KeyValueStore] = None,
                 config=None, scheduler: Optional[Scheduler] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 emitter: Optional[EventEmitter] = None):
        self.config = config or get_config()
        self.tree = tree
        self.kv_store = kv_store or get_kv_store(self.config)
        self.scheduler = scheduler or AsyncioScheduler()
        self.error_handler = error_handler or ErrorHandler(
            debug_mode=self.config.DEBUG, log_file=self.config.ERROR_LOG
        )
        self.emitter = emitter or get_emitter()
        self.namespace = self.config.NAMESPACE

        self.settings = Settings()
        with self.error_handler.create_context_manager(
            ErrorCategory.PERSISTENCE, ErrorSeverity.MEDIUM_ALERT, operation="load_settings"
        ):
            self.settings = Settings.load(self.kv_store, self.namespace)

        group_id, partition_id = parse_location(tree.location())
        self.session = SessionContext(
            partition_id=partition_id,
            group_id=group_id,
            account_id=tree.account_id(),
            max_processed=self.config.MAX_PROCESSED,
        )

        self.classifier = ClassificationEngine(
            self.kv_store, lambda: self.settings, self.error_handler,
            bonus_ttl=self.config.CACHE_TTL, clock=self.scheduler.now,
        )
        self.store = DurableHistoryStore(
            self.kv_store, self.scheduler, self.config,
            self.error_handler, self.emitter, self.namespace,
        )
        self.pending = PendingQueue(
            self.store, self.classifier, self.scheduler, self.config,
            self.error_handler, self.emitter,
        )
        self.resolver = IdentityResolver(self.config.BINDING_DEPTH, self.error_handler)
        self.dispatch = ObserverDispatchLoop(
            tree, self.resolver, self.classifier, self.store, self.pending,
            self.session, self.scheduler, self.config,
            settings=lambda: self.settings,
            error_handler=self.error_handler,
            emitter=self.emitter,
        )
        self.restoration = RestorationEngine(
            tree, self.resolver, self.store, self.pending, self.session,
            self.scheduler, self.config, self.error_handler, self.emitter,
        )
        self.dispatch.restoration = self.restoration

        self._maintenance_timer: Optional[TimerHandle] = None
        self.running = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        if self.running:
            return
        loaded = self.store.load()
        logger.info(f"CriticalHitEngine starting in partition {self.session.partition_id} "
                    f"({loaded} history entries)")
        self.running = True
        self.dispatch.attach()
        if self.session.partition_id is not None:
            self.restoration.restore_partition(self.session.partition_id)
        self.run_maintenance()
        atexit.register(self.flush)

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        self.flush()
        self.remove_all_critical()
        self.dispatch.detach()
        self.dispatch.cancel_timers()
        self.restoration.cancel()
        if self._maintenance_timer is not None:
            self._maintenance_timer.cancel()
            self._maintenance_timer = None
        atexit.unregister(self.flush)
        logger.info("CriticalHitEngine stopped")

    def flush(self) -> bool:
        return self.store.flush()

    def check_location(self) -> bool:
        """Detect host navigation. Returns True when the partition changed."""
        changed = False
        with self.error_handler.create_context_manager(
            ErrorCategory.OBSERVER_ATTACH, ErrorSeverity.MEDIUM_ALERT, operation="check_location"
        ):
            if self.session.account_id is None:
                self.session.account_id = self.tree.account_id()
            _, partition_id = parse_location(self.tree.location())
            if partition_id != self.session.partition_id:
                self.dispatch.on_partition_change()
                changed = True
        return changed

    # =========================================================================
    # SETTINGS AND DISPLAY
    # =========================================================================

    def update_settings(self, **changes) -> Settings:
        """Apply and persist setting changes, then refresh visible markers."""
        self.settings.update(**changes)
        if not self.settings.save(self.kv_store, self.namespace):
            self.error_handler.handle_error(
                IOError("settings could not be written"),
                ErrorCategory.PERSISTENCE, ErrorSeverity.MEDIUM_ALERT,
                operation="update_settings"
            )
        self.classifier.invalidate_bonuses()

        if self.settings.enabled:
            params = self.classifier.current_params()
            for node in self._visible_nodes("update_settings"):
                with self.error_handler.create_context_manager(
                    ErrorCategory.RESTORATION, ErrorSeverity.LOW_DEBUG, operation="restyle_marker"
                ):
                    if node.has_marker:
                        self.tree.apply_critical(node, params)
        else:
            self.remove_all_critical()

        self.emitter.emit("settings_updated", {"changed": sorted(changes)},
                          context_id=self.session.partition_id)
        return self.settings

    def _visible_nodes(self, operation: str) -> List[ContentNode]:
        nodes: List[ContentNode] = []
        with self.error_handler.create_context_manager(
            ErrorCategory.RESTORATION, ErrorSeverity.MEDIUM_ALERT, operation=operation
        ):
            nodes = list(self.tree.visible_nodes())
        return nodes

    def remove_all_critical(self) -> int:
        removed = 0
        for node in self._visible_nodes("remove_all_critical"):
            with self.error_handler.create_context_manager(
                ErrorCategory.RESTORATION, ErrorSeverity.LOW_DEBUG, operation="remove_marker"
            ):
                if filters.is_message_container(node) and node.has_marker:
                    self.tree.remove_critical(node)
                    removed += 1
        return removed

    def fonts_folder_path(self) -> str:
        return self.config.FONTS_DIR

    def on_classified(self, callback: Callable[[Any, bool, Any], None]):
        return self.emitter.on_classified(callback)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def run_maintenance(self) -> Dict[str, int]:
        """Periodic housekeeping; reschedules itself while running."""
        result = {"cleaned": 0, "processed_trimmed": 0, "pending_expired": 0}
        with self.error_handler.create_context_manager(
            ErrorCategory.GENERAL, ErrorSeverity.LOW_DEBUG, operation="maintenance"
        ):
            if self.settings.auto_cleanup_history:
                result["cleaned"] = self.store.cleanup_older_than(self.settings.history_retention_days)
            result["processed_trimmed"] = self.session.processed.trim_to(self.config.MAX_PROCESSED)
            result["pending_expired"] = self.pending.purge_expired()

        if self._maintenance_timer is not None:
            self._maintenance_timer.cancel()
        self._maintenance_timer = None
        if self.running:
            self._maintenance_timer = self.scheduler.call_later(
                self.config.MAINTENANCE_INTERVAL, self.run_maintenance
            )
        return result

    def stats(self) -> Dict[str, Any]:
        return {
            "partition_id": self.session.partition_id,
            "running": self.running,
            "store_backend": self.kv_store.get_name(),
            "history": self.store.stats(),
            "pending": len(self.pending),
            "processed": len(self.session.processed),
            "dispatch": dict(self.dispatch.stats),
            "effective_chance": self.classifier.effective_chance(),
            "errors": self.error_handler.get_error_summary(),
        }
