#!/usr/bin/env python3
"""
Identity Resolver

Turns a rendered content node into the logical identity of its entry.
Sources are tried in order and the first usable candidate wins:

    1. the data-binding chain (message object id, messageId prop)
    2. explicit identity attributes (data-message-id, id)
    3. the looser list-item attribute (data-list-item-id)
    4. any 17-19 digit run inside a composite value
    5. a content fingerprint (tagged FINGERPRINT, provisional)

A candidate equal to the current partition id is always rejected: the host
embeds the channel id in container attributes and picking it would collapse
every entry in the partition onto one identity.
"""

import logging
import re
from typing import Any, Iterator, Optional, Tuple

from crit_ledger.core.datashapes import EntityIdentity
from crit_ledger.core.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from crit_ledger.identity.fingerprint import extract_external_id, is_external_id, node_fingerprint
from crit_ledger.observer.tree import BindingFrame, ContentNode

logger = logging.getLogger(__name__)

USER_LINK_PATTERN = re.compile(r"/users/(\d{17,19})")
LOCATION_PATTERN = re.compile(r"channels/([^/]+)/(\d+)")


def _field(obj: Any, name: str) -> Any:
    """Read name from a dict or an attribute-bearing object."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def parse_location(location: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split ".../channels/{group}/{partition}" into (group_id, partition_id).

    Non-channel pages fall back to the whole location as partition id.
    """
    if not location:
        return None, None
    match = LOCATION_PATTERN.search(location)
    if match:
        return match.group(1), match.group(2)
    return None, location


class IdentityResolver:
    """Resolves node identities and author ids. Holds no per-node state."""

    def __init__(self, max_depth: int = 100, error_handler: Optional[ErrorHandler] = None):
        self.max_depth = max_depth
        self.error_handler = error_handler or ErrorHandler()

    # =========================================================================
    # ENTRY IDENTITY
    # =========================================================================

    def resolve(self, node: ContentNode, context) -> Optional[EntityIdentity]:
        """Resolve node to an identity, or None if it has no usable text."""
        partition_id = getattr(context, "partition_id", None)

        candidate = None
        with self.error_handler.create_context_manager(
            ErrorCategory.IDENTITY_RESOLUTION, ErrorSeverity.LOW_DEBUG, operation="binding_chain"
        ):
            candidate = self._from_binding(node.binding, partition_id)
        if candidate:
            return EntityIdentity.external(candidate)

        for attribute in ("data-message-id", "id", "data-list-item-id"):
            candidate = self._accept(node.closest_attribute(attribute), partition_id, exact_only=True)
            if candidate:
                return EntityIdentity.external(candidate)

        for attribute in ("data-list-item-id", "data-message-id", "id"):
            candidate = self._accept(node.closest_attribute(attribute), partition_id)
            if candidate:
                return EntityIdentity.external(candidate)

        text = (node.text or "").strip()
        if not text:
            return None
        return EntityIdentity.fingerprint(
            node_fingerprint(text, (node.author_label or "").strip(), node.timestamp_label or "")
        )

    def _accept(self, value: Any, partition_id: Optional[str], exact_only: bool = False) -> Optional[str]:
        """Validate one raw candidate, extracting from composites unless exact_only."""
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        if is_external_id(text):
            if partition_id is not None and text == str(partition_id):
                return None
            return text
        if exact_only:
            return None
        return extract_external_id(text, exclude=partition_id)

    def _frames(self, frame: Optional[BindingFrame]) -> Iterator[BindingFrame]:
        if frame is None:
            return iter(())
        return frame.chain(self.max_depth)

    def _from_binding(self, frame: Optional[BindingFrame], partition_id: Optional[str]) -> Optional[str]:
        for current in self._frames(frame):
            child = current.child
            message_objects = (
                _field(current.props, "message"),
                _field(current.state, "message"),
                _field(_field(current.props, "messageProps"), "message"),
                _field(child.props, "message") if child else None,
                _field(child.state, "message") if child else None,
            )
            for message in message_objects:
                candidate = self._accept(_field(message, "id"), partition_id, exact_only=True)
                if candidate:
                    return candidate

            for raw in (*(_field(m, "id") for m in message_objects), _field(current.props, "messageId")):
                candidate = self._accept(raw, partition_id)
                if candidate:
                    return candidate
        return None

    # =========================================================================
    # AUTHOR IDENTITY
    # =========================================================================

    def get_author_identity(self, node: ContentNode) -> Optional[str]:
        """Author's account id from the binding chain, attributes or profile links."""
        with self.error_handler.create_context_manager(
            ErrorCategory.IDENTITY_RESOLUTION, ErrorSeverity.LOW_DEBUG, operation="author_binding"
        ):
            for frame in self._frames(node.binding):
                props = frame.props
                candidates = (
                    _field(_field(_field(props, "message"), "author"), "id"),
                    _field(props, "authorId"),
                    _field(_field(props, "author"), "id"),
                    _field(_field(props, "user"), "id"),
                )
                for raw in candidates:
                    if raw is not None and is_external_id(raw):
                        return str(raw).strip()

        for attribute in ("data-user-id", "data-author-id"):
            raw = node.closest_attribute(attribute)
            if raw is not None and is_external_id(raw):
                return str(raw).strip()

        for href in node.links():
            match = USER_LINK_PATTERN.search(href or "")
            if match:
                return match.group(1)
        return None
