"""
Cheap class/text checks run before any identity work.

`message_container` picks the content entry out of an inserted subtree;
the is_* predicates implement the user-switchable content filters.
"""

from typing import Iterable, List, Optional

from crit_ledger.observer.tree import ContentNode

CONTAINER_EXCLUDED = ("messageContent", "messageGroup", "messageText", "markup")
REPLY_MARKERS = ("reply", "replied", "messagereference")
SYSTEM_MARKERS = ("systemMessage", "systemText", "joinMessage", "leaveMessage",
                  "pinnedMessage", "boostMessage")
SYSTEM_FRAGMENTS = ("system", "join", "leave")
BOT_MARKERS = ("botTag", "botText", "bot")


def _classes(nodes: Iterable[ContentNode]) -> List[str]:
    found = []
    for node in nodes:
        found.extend(node.class_names)
    return found


def is_message_container(node: ContentNode) -> bool:
    classes = node.class_names
    return (any("message" in c for c in classes)
            and not any(x in c for c in classes for x in CONTAINER_EXCLUDED))


def message_container(node: ContentNode) -> Optional[ContentNode]:
    """The node itself or its first descendant that looks like a content entry."""
    if is_message_container(node):
        return node
    for child in node.descendants():
        if is_message_container(child):
            return child
    return None


def passes_prefilter(node: ContentNode) -> bool:
    return is_message_container(node) and bool((node.text or "").strip() or node.has_media)


def _binding_message(node: ContentNode, depth: int = 10):
    frame = node.binding
    if frame is None:
        return
    for current in frame.chain(depth):
        for bag in (current.props, current.state):
            message = bag.get("message") if isinstance(bag, dict) else None
            if message is not None:
                yield message


def is_reply(node: ContentNode) -> bool:
    classes = [c.lower() for c in _classes([node, *node.descendants()])]
    if any(marker in c for c in classes for marker in REPLY_MARKERS):
        return True
    for message in _binding_message(node):
        reference = message.get("messageReference") if isinstance(message, dict) \
            else getattr(message, "messageReference", None)
        if reference:
            return True
    return False


def is_system(node: ContentNode) -> bool:
    own = node.class_names
    if any(fragment in c for c in own for fragment in SYSTEM_FRAGMENTS):
        return True
    nested = _classes(node.descendants())
    return any(marker in c for c in nested for marker in SYSTEM_MARKERS)


def is_bot(node: ContentNode) -> bool:
    nested = _classes(node.descendants())
    return any(marker in c for c in nested for marker in BOT_MARKERS)


def is_empty(node: ContentNode) -> bool:
    """No text at all but carries an embed or attachment."""
    return not (node.text or "").strip() and node.has_media


def should_filter(node: ContentNode, settings) -> bool:
    if settings.filter_replies and is_reply(node):
        return True
    if settings.filter_system_messages and is_system(node):
        return True
    if settings.filter_bot_messages and is_bot(node):
        return True
    if settings.filter_empty_messages and is_empty(node):
        return True
    return False
