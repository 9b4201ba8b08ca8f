"""
Per-session tracking shared by the dispatch loop, resolver and restoration
engine. Replaces loose module globals with one explicit object that is
reset whenever the viewed partition changes.
"""

import logging
from collections import OrderedDict
from typing import Iterable, Optional, Set

logger = logging.getLogger(__name__)


class BoundedIdSet:
    """Insertion-ordered id set that evicts the oldest ids past its limit."""

    def __init__(self, max_size: int = 5000):
        self.max_size = max_size
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def mark(self, identity_value: str) -> bool:
        """Add an id. Returns False if it was already present."""
        if identity_value in self._ids:
            return False
        self._ids[identity_value] = None
        while len(self._ids) > self.max_size:
            self._ids.popitem(last=False)
        return True

    def discard(self, identity_value: str) -> None:
        self._ids.pop(identity_value, None)

    def trim_to(self, size: int) -> int:
        """Drop oldest ids until at most `size` remain; returns how many went."""
        removed = 0
        while len(self._ids) > size:
            self._ids.popitem(last=False)
            removed += 1
        return removed

    def clear(self) -> None:
        self._ids.clear()

    def __contains__(self, identity_value) -> bool:
        return identity_value in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self):
        return iter(self._ids)


class SessionContext:
    """
    Where the engine currently is and what it has already handled.

    partition_id / group_id come from the host location, account_id is
    the signed-in account; verdict reports flag content it authored.
    """

    def __init__(self, partition_id: Optional[str] = None, group_id: Optional[str] = None,
                 account_id: Optional[str] = None, max_processed: int = 5000):
        self.partition_id = partition_id
        self.group_id = group_id
        self.account_id = account_id
        self.processed = BoundedIdSet(max_processed)
        self.critical_ids: Set[str] = set()
        self.in_progress: Set[str] = set()

    def try_begin(self, identity_value: str) -> bool:
        """
        Check and set the in-progress marker in one step.

        Returns False if the id is already processed or being processed.
        """
        if identity_value in self.in_progress or identity_value in self.processed:
            return False
        self.in_progress.add(identity_value)
        return True

    def finish(self, identity_value: str, processed: bool = True) -> None:
        self.in_progress.discard(identity_value)
        if processed:
            self.processed.mark(identity_value)

    def is_partition_id(self, candidate: Optional[str]) -> bool:
        return bool(candidate) and self.partition_id is not None and str(candidate) == str(self.partition_id)

    def is_own(self, author_id: Optional[str]) -> bool:
        return bool(author_id) and self.account_id is not None and str(author_id) == str(self.account_id)

    def mark_critical(self, identity_values: Iterable[str]) -> None:
        self.critical_ids.update(identity_values)

    def move_to(self, partition_id: Optional[str], group_id: Optional[str] = None) -> None:
        """Switch partitions and drop all per-partition tracking."""
        logger.debug(f"Session moving from {self.partition_id} to {partition_id}")
        self.partition_id = partition_id
        self.group_id = group_id
        self.reset()

    def reset(self) -> None:
        self.processed.clear()
        self.critical_ids.clear()
        self.in_progress.clear()
