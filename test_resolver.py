"""
Tests for the authorization resolver: ownership, user grants, links, expiry and
the way access flows down (never up) the tree.
"""
from datetime import datetime, timedelta, timezone

import pytest

from authz.resolver import Access, Reason, explain, require, resolve
from errors import ExpiredGrant, GENERIC_NOT_FOUND, NotFound, PermissionDenied, public_error
from sharing.grants import grant_link, grant_to_user
from storage.file_manager import create_node


@pytest.fixture
def tree(store, blobs, login):
    """alice owns docs/ -> docs/reports/ -> docs/reports/q1.txt"""
    alice, session = login("alice")
    docs, docs_key = create_node(store, blobs, session, "docs", is_directory=True)
    reports, reports_key = create_node(store, blobs, session, "reports", parent_id=docs.node_id,
                                       parent_key=docs_key, is_directory=True)
    q1, q1_key = create_node(store, blobs, session, "q1.txt", parent_id=reports.node_id,
                             parent_key=reports_key, content=b"revenue")
    return {
        "alice": alice,
        "session": session,
        "docs": (docs, docs_key),
        "reports": (reports, reports_key),
        "q1": (q1, q1_key),
    }


def test_owner_has_owner_access_everywhere(store, tree):
    alice = tree["alice"].user_id
    for name in ("docs", "reports", "q1"):
        assert resolve(store.snapshot(), alice, tree[name][0].node_id) == Access.OWNER


def test_stranger_and_anonymous_are_denied(store, tree, login):
    bob, _ = login("bob")
    q1 = tree["q1"][0].node_id
    assert resolve(store.snapshot(), bob.user_id, q1) == Access.DENIED
    assert resolve(store.snapshot(), None, q1) == Access.DENIED
    assert explain(store.snapshot(), bob.user_id, q1).reason is Reason.NO_GRANT


def test_missing_node_is_denied(store, tree):
    decision = explain(store.snapshot(), tree["alice"].user_id, "no-such-node")
    assert decision.access == Access.DENIED
    assert decision.reason is Reason.NOT_FOUND


def test_grants_flow_down_not_up(store, accounts, tree, login):
    bob, _ = login("bob")
    reports, reports_key = tree["reports"]
    grant_to_user(store, accounts, tree["session"], reports.node_id, reports_key, bob.user_id, edit=False)

    snapshot = store.snapshot()
    assert resolve(snapshot, bob.user_id, reports.node_id) == Access.VIEWER
    assert resolve(snapshot, bob.user_id, tree["q1"][0].node_id) == Access.VIEWER
    assert resolve(snapshot, bob.user_id, tree["docs"][0].node_id) == Access.DENIED


def test_most_permissive_grant_wins(store, accounts, tree, login):
    bob, _ = login("bob")
    docs, docs_key = tree["docs"]
    reports, reports_key = tree["reports"]
    q1 = tree["q1"][0]

    # editor high up, viewer closer to the target
    grant_to_user(store, accounts, tree["session"], docs.node_id, docs_key, bob.user_id, edit=True)
    grant_to_user(store, accounts, tree["session"], reports.node_id, reports_key, bob.user_id, edit=False)

    decision = explain(store.snapshot(), bob.user_id, q1.node_id)
    assert decision.access == Access.EDITOR
    assert decision.via == docs.node_id


def test_access_join_is_the_more_permissive():
    assert Access.VIEWER.join(Access.EDITOR) == Access.EDITOR
    assert Access.OWNER.join(Access.VIEWER) == Access.OWNER
    assert Access.DENIED.join(Access.DENIED) == Access.DENIED


def test_granting_edit_at_an_ancestor_never_reduces_access(store, accounts, tree, login):
    bob, _ = login("bob")
    docs, docs_key = tree["docs"]
    reports, reports_key = tree["reports"]
    nodes = [tree[name][0].node_id for name in ("docs", "reports", "q1")]

    grant_to_user(store, accounts, tree["session"], reports.node_id, reports_key, bob.user_id, edit=True)
    before = {n: resolve(store.snapshot(), bob.user_id, n) for n in nodes}
    grant_to_user(store, accounts, tree["session"], docs.node_id, docs_key, bob.user_id, edit=True)
    after = {n: resolve(store.snapshot(), bob.user_id, n) for n in nodes}

    assert all(after[n] >= before[n] for n in nodes)
    assert after[docs.node_id] == Access.EDITOR


def test_expired_user_grant(store, accounts, tree, login):
    bob, _ = login("bob")
    reports, reports_key = tree["reports"]
    expiry = datetime.now(timezone.utc) + timedelta(hours=1)
    grant_to_user(store, accounts, tree["session"], reports.node_id, reports_key, bob.user_id,
                  edit=True, expires_at=expiry)

    later = expiry + timedelta(seconds=1)
    snapshot = store.snapshot()
    assert resolve(snapshot, bob.user_id, reports.node_id) == Access.EDITOR
    assert resolve(snapshot, bob.user_id, reports.node_id, now=later) == Access.DENIED
    assert explain(snapshot, bob.user_id, reports.node_id, now=later).reason is Reason.EXPIRED
    with pytest.raises(ExpiredGrant):
        require(snapshot, bob.user_id, reports.node_id, Access.VIEWER, now=later)


def test_link_with_password(store, tree):
    docs, docs_key = tree["docs"]
    q1 = tree["q1"][0]
    share = grant_link(store, tree["session"], docs.node_id, docs_key, edit=False, password="s3cret")

    snapshot = store.snapshot()
    assert resolve(snapshot, None, q1.node_id, share.credential("s3cret")) == Access.VIEWER
    assert resolve(snapshot, None, q1.node_id, share.credential()) == Access.DENIED
    decision = explain(snapshot, None, q1.node_id, share.credential("guess"))
    assert decision.access == Access.DENIED
    assert decision.reason is Reason.BAD_LINK_PASSWORD


def test_link_only_covers_its_subtree(store, tree):
    reports, reports_key = tree["reports"]
    share = grant_link(store, tree["session"], reports.node_id, reports_key, edit=True)
    snapshot = store.snapshot()
    assert resolve(snapshot, None, tree["q1"][0].node_id, share.credential()) == Access.EDITOR
    assert resolve(snapshot, None, tree["docs"][0].node_id, share.credential()) == Access.DENIED


def test_require_denials_look_the_same_publicly(store, tree, login):
    bob, _ = login("bob")
    snapshot = store.snapshot()
    with pytest.raises(PermissionDenied) as denied:
        require(snapshot, bob.user_id, tree["q1"][0].node_id, Access.VIEWER)
    with pytest.raises(NotFound) as missing:
        require(snapshot, bob.user_id, "no-such-node", Access.VIEWER)

    assert type(denied.value) is PermissionDenied
    for exc in (denied.value, missing.value, ExpiredGrant("x")):
        public = public_error(exc)
        assert isinstance(public, NotFound)
        assert str(public) == GENERIC_NOT_FOUND


def test_require_passes_with_enough_access(store, accounts, tree, login):
    bob, _ = login("bob")
    reports, reports_key = tree["reports"]
    grant_to_user(store, accounts, tree["session"], reports.node_id, reports_key, bob.user_id, edit=False)
    decision = require(store.snapshot(), bob.user_id, tree["q1"][0].node_id, Access.VIEWER)
    assert decision.via == reports.node_id
    with pytest.raises(PermissionDenied):
        require(store.snapshot(), bob.user_id, tree["q1"][0].node_id, Access.EDITOR)
