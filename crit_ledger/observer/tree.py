#!/usr/bin/env python3
"""
tree.py - The live content tree the engine observes

The host owns the tree and replaces nodes wholesale at will. The engine only
sees it through these interfaces:

    ContentNode  - one rendered entry (classes, attributes, text, labels,
                   the data-binding chain, descendants, the critical marker)
    LiveTree     - location, watch target, structural-change subscription,
                   node lookup and marker application
    Subscription - handle returned by LiveTree.subscribe

StaticNode / StaticTree are in-memory implementations used by tests, the
CLI and embedders that feed content in from elsewhere.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

# Attributes that mark a node as an annotated content container
ANNOTATION_ATTRIBUTES = ("data-list-item-id", "data-message-id", "id")


# =============================================================================
# DATA BINDING CHAIN
# =============================================================================

@dataclass
class BindingFrame:
    """
    One frame of the host's data-binding chain.

    `parent` points toward the root of the chain, `child` toward the leaf.
    """
    props: Dict[str, Any] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)
    child: Optional["BindingFrame"] = None
    parent: Optional["BindingFrame"] = None

    def chain(self, max_depth: int) -> Iterator["BindingFrame"]:
        """Yield this frame and its parents, at most max_depth frames."""
        frame = self
        depth = 0
        while frame is not None and depth < max_depth:
            yield frame
            frame = frame.parent
            depth += 1

    @classmethod
    def from_chain(cls, *frames: "BindingFrame") -> "BindingFrame":
        """Link frames leaf-first and return the leaf."""
        for lower, upper in zip(frames, frames[1:]):
            lower.parent = upper
        return frames[0]


# =============================================================================
# INTERFACES
# =============================================================================

class ContentNode(ABC):
    """A rendered content entry owned by the host."""

    @property
    @abstractmethod
    def class_names(self) -> List[str]:
        pass

    @abstractmethod
    def get_attribute(self, name: str) -> Optional[str]:
        pass

    @abstractmethod
    def closest_attribute(self, name: str) -> Optional[str]:
        """Attribute on this node or its nearest annotated ancestor."""
        pass

    @property
    @abstractmethod
    def text(self) -> str:
        pass

    @property
    @abstractmethod
    def author_label(self) -> str:
        pass

    @property
    @abstractmethod
    def timestamp_label(self) -> str:
        pass

    @property
    @abstractmethod
    def binding(self) -> Optional[BindingFrame]:
        pass

    @abstractmethod
    def descendants(self) -> List["ContentNode"]:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @property
    @abstractmethod
    def has_marker(self) -> bool:
        """True while the critical display marker is applied."""
        pass

    def links(self) -> List[str]:
        """hrefs found on this node and its descendants."""
        return []

    @property
    def has_media(self) -> bool:
        """True when the node carries an embed or attachment."""
        return False


class Subscription(ABC):
    @abstractmethod
    def unsubscribe(self) -> None:
        pass


class LiveTree(ABC):
    """The host-owned tree."""

    @abstractmethod
    def location(self) -> str:
        pass

    @abstractmethod
    def account_id(self) -> Optional[str]:
        pass

    @abstractmethod
    def find_watch_target(self) -> Optional[ContentNode]:
        pass

    @abstractmethod
    def subscribe(self, target: ContentNode,
                  callback: Callable[[List[ContentNode]], None]) -> Subscription:
        """callback receives the nodes inserted by one structural change."""
        pass

    @abstractmethod
    def visible_nodes(self) -> List[ContentNode]:
        pass

    @abstractmethod
    def node_for_identity(self, identity_value: str) -> Optional[ContentNode]:
        pass

    @abstractmethod
    def apply_critical(self, node: ContentNode, params) -> None:
        pass

    @abstractmethod
    def remove_critical(self, node: ContentNode) -> None:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class StaticNode(ContentNode):
    """Plain in-memory node."""

    def __init__(self, classes=None, attributes=None, text: str = "", author: str = "",
                 timestamp: str = "", binding: Optional[BindingFrame] = None,
                 children=None, links=None, has_media: bool = False):
        self._classes = list(classes or ["message"])
        self._attributes = dict(attributes or {})
        self._text = text
        self._author = author
        self._timestamp = timestamp
        self._binding = binding
        self._children: List["StaticNode"] = []
        self._links = list(links or [])
        self._has_media = has_media
        self.parent: Optional["StaticNode"] = None
        self.connected = True
        self.marker_params = None
        for child in children or []:
            self.add_child(child)

    def add_child(self, child: "StaticNode") -> "StaticNode":
        child.parent = self
        self._children.append(child)
        return child

    @property
    def class_names(self) -> List[str]:
        return list(self._classes)

    def get_attribute(self, name: str) -> Optional[str]:
        return self._attributes.get(name)

    def set_attribute(self, name: str, value: str) -> None:
        self._attributes[name] = value

    def closest_attribute(self, name: str) -> Optional[str]:
        node = self
        while node is not None:
            value = node.get_attribute(name)
            if value is not None:
                return value
            if any(node.get_attribute(a) is not None for a in ANNOTATION_ATTRIBUTES):
                return None
            node = node.parent
        return None

    @property
    def text(self) -> str:
        return self._text

    @property
    def author_label(self) -> str:
        return self._author

    @property
    def timestamp_label(self) -> str:
        return self._timestamp

    @property
    def binding(self) -> Optional[BindingFrame]:
        return self._binding

    def descendants(self) -> List[ContentNode]:
        found: List[ContentNode] = []
        for child in self._children:
            found.append(child)
            found.extend(child.descendants())
        return found

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def has_marker(self) -> bool:
        return self.marker_params is not None

    def links(self) -> List[str]:
        found = list(self._links)
        for child in self._children:
            found.extend(child.links())
        return found

    @property
    def has_media(self) -> bool:
        return self._has_media or any(c.has_media for c in self._children)

    def __repr__(self) -> str:
        ident = self._attributes.get("data-list-item-id") or self._attributes.get("id") or "?"
        return f"StaticNode({ident!r}, text={self._text[:20]!r})"


class _StaticSubscription(Subscription):
    def __init__(self, tree: "StaticTree", callback):
        self._tree = tree
        self._callback = callback

    def unsubscribe(self) -> None:
        if self._callback in self._tree._subscribers:
            self._tree._subscribers.remove(self._callback)


class StaticTree(LiveTree):
    """
    In-memory tree. `insert`, `replace` and `clear` mimic the host's
    structural changes and notify subscribers with the inserted nodes.
    """

    def __init__(self, location: str = "", account_id: Optional[str] = None,
                 has_watch_target: bool = True):
        self._location = location
        self._account_id = account_id
        self.root = StaticNode(classes=["messagesWrapper"])
        self.has_watch_target = has_watch_target
        self._subscribers: List[Callable[[List[ContentNode]], None]] = []
        self.apply_calls: List[Any] = []

    def navigate(self, location: str) -> None:
        """Change location and drop every rendered node."""
        self._location = location
        self.clear(notify=False)

    def location(self) -> str:
        return self._location

    def account_id(self) -> Optional[str]:
        return self._account_id

    def find_watch_target(self) -> Optional[ContentNode]:
        return self.root if self.has_watch_target else None

    def subscribe(self, target, callback) -> Subscription:
        self._subscribers.append(callback)
        return _StaticSubscription(self, callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def insert(self, *nodes: StaticNode, notify: bool = True) -> List[StaticNode]:
        for node in nodes:
            node.connected = True
            self.root.add_child(node)
        if notify:
            self._notify(list(nodes))
        return list(nodes)

    def replace(self, old: StaticNode, new: StaticNode, notify: bool = True) -> StaticNode:
        """Swap a node for a fresh copy, as the host does on re-render."""
        old.connected = False
        children = self.root._children
        if old in children:
            children[children.index(old)] = new
        else:
            children.append(new)
        new.parent = self.root
        new.connected = True
        if notify:
            self._notify([new])
        return new

    def clear(self, notify: bool = True) -> None:
        for child in self.root._children:
            child.connected = False
        self.root._children = []
        if notify:
            self._notify([])

    def _notify(self, inserted: List[ContentNode]) -> None:
        for callback in list(self._subscribers):
            callback(inserted)

    def visible_nodes(self) -> List[ContentNode]:
        return [n for n in self.root.descendants() if n.is_connected]

    def node_for_identity(self, identity_value: str) -> Optional[ContentNode]:
        for node in self.visible_nodes():
            for attribute in ANNOTATION_ATTRIBUTES:
                value = node.get_attribute(attribute)
                if value and (value == identity_value or value.endswith(f"-{identity_value}")):
                    return node
        return None

    def apply_critical(self, node: ContentNode, params) -> None:
        self.apply_calls.append((node, params))
        if isinstance(node, StaticNode):
            node.marker_params = params

    def remove_critical(self, node: ContentNode) -> None:
        if isinstance(node, StaticNode):
            node.marker_params = None
