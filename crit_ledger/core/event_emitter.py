#!/usr/bin/env python3
"""
event_emitter.py - Central Event Emission for the engine's visibility stream

Every notable engine transition (a critical verdict confirmed on screen, a
restoration pass that could not find everything, a history trim, a pending
verdict discarded on re-check) is emitted here as a tiered event.

Event Tiers:
    Tier 1 (Critical): Always streamed - critical_classified, restoration_incomplete
    Tier 2 (System): history_trimmed, pending_discarded, partition_changed, ...
    Tier 3 (Debug): node_restored, restoration_retry, observer_attach_retry, ...

Usage:
    from crit_ledger.core.event_emitter import EventEmitter, EventTier

    emitter = EventEmitter()
    emitter.on_classified(lambda node, is_critical, params: ...)
    emitter.emit("history_trimmed", {"removed": 12})
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class EventTier(Enum):
    """Event visibility tiers - controls which listeners are notified."""
    CRITICAL = 1   # Always streamed
    SYSTEM = 2     # Streamed when enabled
    DEBUG = 3      # Buffered only by default


@dataclass
class VisibilityEvent:
    """
    A single event in the visibility stream.

    `subject` carries the live object the event is about (usually a content
    node). It is handed to listeners but never serialized.
    """
    sequence: int
    timestamp: str
    event_type: str
    payload: Dict[str, Any]
    tier: EventTier
    context_id: str = "SYSTEM"  # Partition the event relates to
    subject: Any = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "type": self.event_type,
            "payload": self.payload,
            "tier": self.tier.value,
            "tier_name": self.tier.name.lower(),
            "context_id": self.context_id,
        }


EVENT_TIER_MAP: Dict[str, EventTier] = {
    # Tier 1
    "critical_classified": EventTier.CRITICAL,
    "restoration_incomplete": EventTier.CRITICAL,
    "store_corrupted": EventTier.CRITICAL,
    "store_unavailable": EventTier.CRITICAL,

    # Tier 2
    "history_trimmed": EventTier.SYSTEM,
    "history_cleaned": EventTier.SYSTEM,
    "pending_discarded": EventTier.SYSTEM,
    "partition_changed": EventTier.SYSTEM,
    "observer_attached": EventTier.SYSTEM,
    "settings_updated": EventTier.SYSTEM,

    # Tier 3
    "node_restored": EventTier.DEBUG,
    "restoration_retry": EventTier.DEBUG,
    "observer_attach_retry": EventTier.DEBUG,
    "node_requeued": EventTier.DEBUG,
    "history_saved": EventTier.DEBUG,
}


class EventEmitter:
    """
    Central hub for engine events.

    Responsibilities:
    - Assign sequence numbers to events
    - Classify events by tier
    - Keep a bounded buffer of recent events
    - Notify registered listeners for streamed tiers
    """

    def __init__(self, stream_tiers: Optional[Set[EventTier]] = None, buffer_max_size: int = 1000):
        self._sequence = 0
        self._listeners: List[Callable[[VisibilityEvent], None]] = []
        self._stream_tiers = stream_tiers or {EventTier.CRITICAL, EventTier.SYSTEM}
        self._tier_overrides: Dict[str, EventTier] = {}
        self._event_buffer: List[VisibilityEvent] = []
        self._buffer_max_size = buffer_max_size

    def _next_seq(self) -> int:
        self._sequence += 1
        return self._sequence

    def _get_tier(self, event_type: str) -> EventTier:
        """Unknown event types default to DEBUG tier."""
        if event_type in self._tier_overrides:
            return self._tier_overrides[event_type]
        return EVENT_TIER_MAP.get(event_type, EventTier.DEBUG)

    def set_tier_override(self, event_type: str, tier: EventTier) -> None:
        self._tier_overrides[event_type] = tier

    def set_stream_tiers(self, tiers: Set[EventTier]) -> None:
        self._stream_tiers = tiers

    def add_listener(self, callback: Callable[[VisibilityEvent], None]) -> None:
        """Add a listener called for events in the streamed tiers."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def on_classified(self, callback: Callable[[Any, bool, Any], None]) -> Callable[[VisibilityEvent], None]:
        """
        Register `callback(node, is_critical, params)` for confirmed verdicts.

        Returns the underlying listener so it can be removed later.
        """
        def listener(event: VisibilityEvent) -> None:
            if event.event_type == "critical_classified":
                callback(event.subject, event.payload.get("is_critical", True), event.payload.get("params"))

        self.add_listener(listener)
        return listener

    def emit(
        self,
        event_type: str,
        payload: Dict[str, Any],
        context_id: Optional[str] = None,
        subject: Any = None,
        tier_override: Optional[EventTier] = None
    ) -> VisibilityEvent:
        """
        Emit an event.

        Args:
            event_type: Type of event (e.g., "critical_classified")
            payload: Event-specific data
            context_id: Partition this relates to
            subject: Live object the event is about, passed to listeners
            tier_override: Override tier for this specific emit

        Returns:
            The created VisibilityEvent
        """
        tier = tier_override if tier_override else self._get_tier(event_type)

        event = VisibilityEvent(
            sequence=self._next_seq(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            event_type=event_type,
            payload=payload,
            tier=tier,
            context_id=context_id or "SYSTEM",
            subject=subject,
        )

        self._event_buffer.append(event)
        if len(self._event_buffer) > self._buffer_max_size:
            self._event_buffer.pop(0)

        if tier in self._stream_tiers:
            self._notify_listeners(event)

        return event

    def _notify_listeners(self, event: VisibilityEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                # A failing listener must not break the dispatch loop
                logger.error(f"[EventEmitter] Listener error on {event.event_type}: {e}")

    def get_recent_events(
        self,
        count: int = 100,
        tier: Optional[EventTier] = None,
        event_type: Optional[str] = None
    ) -> List[VisibilityEvent]:
        """Get recent events from buffer (newest last)."""
        events = self._event_buffer
        if tier is not None:
            events = [e for e in events if e.tier == tier]
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events[-count:]

    def stats(self) -> Dict[str, Any]:
        """Get emitter statistics."""
        tier_counts = {tier.name.lower(): 0 for tier in EventTier}
        type_counts: Dict[str, int] = {}

        for event in self._event_buffer:
            tier_counts[event.tier.name.lower()] += 1
            type_counts[event.event_type] = type_counts.get(event.event_type, 0) + 1

        return {
            "total_emitted": self._sequence,
            "buffer_size": len(self._event_buffer),
            "buffer_max": self._buffer_max_size,
            "stream_tiers": sorted(t.name.lower() for t in self._stream_tiers),
            "listener_count": len(self._listeners),
            "tier_counts": tier_counts,
            "type_counts": type_counts,
        }


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_global_emitter: Optional[EventEmitter] = None


def get_emitter() -> EventEmitter:
    """
    Get the global EventEmitter instance.

    Engines built without an explicit emitter share this one.
    """
    global _global_emitter
    if _global_emitter is None:
        _global_emitter = EventEmitter()
    return _global_emitter
