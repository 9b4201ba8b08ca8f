"""
datashapes.py - Centralized Data Shape Definitions

All dataclasses and enums shared by the resolver, classifier, history store,
pending queue, dispatch loop and restoration engine live here.

Other modules import from here to keep one definition of each shape:
    from crit_ledger.core.datashapes import EntityIdentity, HistoryEntry

Persisted records keep the legacy camelCase keys (messageId, channelId,
isCrit, critSettings, ...) so history written by earlier installs loads
without migration.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


EXTERNAL_ID_PATTERN = re.compile(r"^\d{17,19}$")
EMBEDDED_ID_PATTERN = re.compile(r"\d{17,19}")
FINGERPRINT_PREFIX = "hash_"


# =============================================================================
# ENUMS
# =============================================================================

class IdentityKind(Enum):
    """Where a logical identity came from."""
    EXTERNAL = "external"        # Host-issued 17-19 digit id, authoritative
    FINGERPRINT = "fingerprint"  # Derived from author + body + timestamp, provisional


class NodeState(Enum):
    """Lifecycle of one content node inside the dispatch loop."""
    UNCLASSIFIED = "unclassified"
    RESOLVING = "resolving"
    CLASSIFIED_CRITICAL = "classified_critical"
    CLASSIFIED_NON_CRITICAL = "classified_non_critical"
    PROCESSED = "processed"


# =============================================================================
# IDENTITY
# =============================================================================

@dataclass(frozen=True)
class EntityIdentity:
    """
    Logical identity of a content entry.

    Tagged so call sites must handle the provisional fingerprint case
    explicitly instead of passing bare strings around.
    """
    value: str
    kind: IdentityKind

    @classmethod
    def external(cls, value: str) -> "EntityIdentity":
        return cls(value=str(value).strip(), kind=IdentityKind.EXTERNAL)

    @classmethod
    def fingerprint(cls, value: str) -> "EntityIdentity":
        return cls(value=str(value).strip(), kind=IdentityKind.FINGERPRINT)

    @classmethod
    def from_stored(cls, value: Any) -> Optional["EntityIdentity"]:
        """Rebuild an identity from a persisted messageId value."""
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        if text.startswith(FINGERPRINT_PREFIX):
            return cls.fingerprint(text)
        if EXTERNAL_ID_PATTERN.match(text):
            return cls.external(text)
        match = EMBEDDED_ID_PATTERN.search(text)
        if match:
            return cls.external(match.group(0))
        return cls.fingerprint(text)

    @property
    def is_external(self) -> bool:
        return self.kind is IdentityKind.EXTERNAL

    @property
    def is_fingerprint(self) -> bool:
        return self.kind is IdentityKind.FINGERPRINT

    def __str__(self) -> str:
        return self.value


# =============================================================================
# CLASSIFICATION
# =============================================================================

@dataclass
class ClassificationParams:
    """Display parameters stored alongside a critical verdict."""
    color: str = "#ff0000"
    use_gradient: bool = True
    font: str = "'Nova Flat', sans-serif"
    glow: bool = True
    animate: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "color": self.color,
            "gradient": self.use_gradient,
            "font": self.font,
            "glow": self.glow,
            "animation": self.animate,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ClassificationParams"]:
        if not isinstance(data, dict):
            return None
        defaults = cls()
        return cls(
            color=data.get("color", defaults.color),
            use_gradient=data.get("gradient", defaults.use_gradient) is not False,
            font=data.get("font", defaults.font),
            glow=bool(data.get("glow", defaults.glow)),
            animate=bool(data.get("animation", defaults.animate)),
        )


@dataclass
class Verdict:
    """Result of one deterministic classification."""
    is_critical: bool
    roll: float
    seed: str
    effective_chance: float


# =============================================================================
# HISTORY AND PENDING ENTRIES
# =============================================================================

@dataclass
class HistoryEntry:
    """
    One durable (identity -> classification) record.

    Owned by the DurableHistoryStore; at most one per (identity, partition).
    """
    identity: EntityIdentity
    partition_id: Optional[str]
    timestamp: int                      # epoch milliseconds
    is_critical: bool = False
    params: Optional[ClassificationParams] = None
    group_id: Optional[str] = None
    body_preview: Optional[str] = None
    author_name: Optional[str] = None
    author_id: Optional[str] = None

    def key(self):
        return (self.identity.value, self.partition_id)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the persisted history schema."""
        return {
            "messageId": self.identity.value,
            "authorId": self.author_id,
            "channelId": self.partition_id,
            "guildId": self.group_id,
            "timestamp": self.timestamp,
            "isCrit": self.is_critical,
            "critSettings": self.params.to_dict() if (self.is_critical and self.params) else None,
            "messageContent": self.body_preview,
            "author": self.author_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["HistoryEntry"]:
        """Rebuild from a persisted record; returns None for unusable rows."""
        if not isinstance(data, dict):
            return None
        identity = EntityIdentity.from_stored(data.get("messageId"))
        if identity is None:
            return None
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            return None
        is_critical = bool(data.get("isCrit", False))
        channel_id = data.get("channelId")
        return cls(
            identity=identity,
            partition_id=str(channel_id).strip() if channel_id is not None else None,
            timestamp=int(timestamp),
            is_critical=is_critical,
            params=ClassificationParams.from_dict(data.get("critSettings")) if is_critical else None,
            group_id=data.get("guildId"),
            body_preview=data.get("messageContent"),
            author_name=data.get("author"),
            author_id=data.get("authorId"),
        )

    def copy(self, **changes) -> "HistoryEntry":
        return replace(self, **changes)


@dataclass
class PendingEntry:
    """
    A verdict staged before its authoritative identity is confirmed.

    Lives in the PendingQueue for a few seconds at most.
    """
    identity: EntityIdentity             # key the entry was staged under
    params: ClassificationParams
    timestamp: float                     # scheduler time when staged (seconds)
    partition_id: Optional[str]
    body_preview: Optional[str] = None
    author_name: Optional[str] = None
    author_id: Optional[str] = None
    group_id: Optional[str] = None
    fingerprint: Optional[str] = None
    is_fingerprint_key: bool = False
    timestamp_label: str = ""
    entry_timestamp: Optional[int] = None  # epoch ms of the underlying content


@dataclass
class RestorationReport:
    """Outcome of one restore_partition pass."""
    partition_id: Optional[str]
    retry_count: int = 0
    expected: int = 0
    restored: int = 0
    already_marked: int = 0
    unresolved_nodes: int = 0
    missing_ids: List[str] = field(default_factory=list)
    retry_scheduled: bool = False
    exhausted: bool = False

    @property
    def matched(self) -> int:
        return self.restored + self.already_marked

    @property
    def complete(self) -> bool:
        return self.matched >= self.expected

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "retry_count": self.retry_count,
            "expected": self.expected,
            "restored": self.restored,
            "already_marked": self.already_marked,
            "unresolved_nodes": self.unresolved_nodes,
            "missing_ids": list(self.missing_ids[:5]),
            "retry_scheduled": self.retry_scheduled,
            "exhausted": self.exhausted,
        }
