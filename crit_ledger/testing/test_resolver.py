"""
Identity Resolver Tests

Covers the source order (binding chain, exact attributes, composite
attributes, fingerprint), the partition-id reject rule and author lookup.
"""

import pytest

from crit_ledger.identity.fingerprint import node_fingerprint
from crit_ledger.identity.resolver import IdentityResolver, parse_location
from crit_ledger.observer.tree import BindingFrame, StaticNode

from crit_ledger.testing.conftest import (
    AUTHOR_ID,
    GROUP_ID,
    LOCATION,
    PARTITION_ID,
    make_node,
    message_id,
)


# =============================================================================
# LOCATION
# =============================================================================

class TestParseLocation:

    def test_channel_location(self):
        assert parse_location(LOCATION) == (GROUP_ID, PARTITION_ID)

    def test_direct_messages(self):
        assert parse_location("https://host.example/channels/@me/123456") == ("@me", "123456")

    def test_non_channel_page_falls_back_to_location(self):
        """EDGE: Pages outside a channel use the whole location as partition."""
        assert parse_location("https://host.example/settings") == (None, "https://host.example/settings")

    def test_empty(self):
        assert parse_location("") == (None, None)
        assert parse_location(None) == (None, None)


# =============================================================================
# ENTRY IDENTITY
# =============================================================================

class TestResolve:

    def test_binding_message_id_wins(self, resolver, session):
        """HAPPY PATH: The data-binding message id beats every attribute."""
        frame = BindingFrame(props={"message": {"id": message_id(1)}})
        node = make_node(2, binding=frame)

        identity = resolver.resolve(node, session)

        assert identity.is_external
        assert identity.value == message_id(1)

    def test_binding_child_frame(self, resolver, session):
        frame = BindingFrame(props={}, child=BindingFrame(state={"message": {"id": message_id(3)}}))
        identity = resolver.resolve(make_node(binding=frame), session)
        assert identity.value == message_id(3)

    def test_binding_walks_parent_frames(self, resolver, session):
        leaf = BindingFrame.from_chain(
            BindingFrame(props={"className": "x"}),
            BindingFrame(props={}),
            BindingFrame(props={"messageId": f"chat-messages-{PARTITION_ID}-{message_id(4)}"}),
        )
        identity = resolver.resolve(make_node(binding=leaf), session)
        assert identity.value == message_id(4)

    def test_binding_depth_is_bounded(self, session, error_handler):
        """EDGE: Frames past max_depth are never read."""
        resolver = IdentityResolver(max_depth=2, error_handler=error_handler)
        leaf = BindingFrame.from_chain(
            BindingFrame(), BindingFrame(), BindingFrame(props={"message": {"id": message_id(5)}}),
        )
        identity = resolver.resolve(make_node(text="deep", author="", binding=leaf), session)
        assert identity.is_fingerprint

    def test_binding_partition_id_rejected(self, resolver, session):
        """EDGE: A binding id equal to the partition falls through to attributes."""
        frame = BindingFrame(props={"message": {"id": PARTITION_ID}})
        identity = resolver.resolve(make_node(6, binding=frame), session)
        assert identity.value == message_id(6)

    def test_exact_message_id_attribute(self, resolver, session):
        node = make_node(attributes={"data-message-id": message_id(7)})
        assert resolver.resolve(node, session).value == message_id(7)

    def test_composite_list_item_id(self, resolver, session):
        """HAPPY PATH: chat-messages-<partition>-<id> yields the message id."""
        assert resolver.resolve(make_node(8), session).value == message_id(8)

    def test_composite_with_only_partition_id(self, resolver, session):
        """EDGE: A container id holding just the partition id never becomes an identity."""
        node = make_node(text="hi", author="", attributes={"id": f"chat-messages-{PARTITION_ID}"})
        identity = resolver.resolve(node, session)
        assert identity.is_fingerprint
        assert identity.value != PARTITION_ID

    def test_exact_partition_id_attribute_rejected(self, resolver, session):
        node = make_node(text="hi", author="", attributes={"data-message-id": PARTITION_ID})
        assert resolver.resolve(node, session).is_fingerprint

    def test_attribute_read_from_annotated_ancestor(self, resolver, session):
        parent = make_node(9)
        child = StaticNode(classes=["contents"], text="inner")
        parent.add_child(child)
        assert resolver.resolve(child, session).value == message_id(9)

    def test_fingerprint_fallback(self, resolver, session):
        node = make_node(text="  some text  ", author="alice", timestamp="Today at 12:00")
        identity = resolver.resolve(node, session)
        assert identity.is_fingerprint
        assert identity.value == node_fingerprint("some text", "alice", "Today at 12:00")

    def test_fingerprint_without_author(self, resolver, session):
        identity = resolver.resolve(make_node(text="only body", author=""), session)
        assert identity.value == node_fingerprint("only body")

    def test_no_id_no_text(self, resolver, session):
        """EDGE: Nothing to identify the node by."""
        assert resolver.resolve(make_node(text="   "), session) is None

    def test_broken_binding_is_contained(self, resolver, session):
        """EDGE: A binding object that raises is logged and skipped."""
        class Exploding:
            @property
            def id(self):
                raise RuntimeError("detached")

        frame = BindingFrame(props={"message": Exploding()})
        identity = resolver.resolve(make_node(10, binding=frame), session)
        assert identity.value == message_id(10)
        assert resolver.error_handler.recent_errors


# =============================================================================
# AUTHOR IDENTITY
# =============================================================================

class TestAuthorIdentity:

    def test_from_binding(self, resolver):
        frame = BindingFrame(props={"message": {"author": {"id": AUTHOR_ID}}})
        assert resolver.get_author_identity(make_node(binding=frame)) == AUTHOR_ID

    def test_from_attribute(self, resolver):
        node = make_node(attributes={"data-author-id": AUTHOR_ID})
        assert resolver.get_author_identity(node) == AUTHOR_ID

    def test_from_profile_link(self, resolver):
        child = StaticNode(classes=["username"], links=[f"/users/{AUTHOR_ID}"])
        node = make_node(children=[child])
        assert resolver.get_author_identity(node) == AUTHOR_ID

    @pytest.mark.parametrize("raw", ["not-an-id", "123"])
    def test_invalid_author_ids_ignored(self, resolver, raw):
        frame = BindingFrame(props={"authorId": raw})
        assert resolver.get_author_identity(make_node(binding=frame)) is None
