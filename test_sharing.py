"""
Tests for user grants and share links: creating, updating, revoking and
expiring grants, and what a grantee can open with them.
"""
from datetime import datetime, timedelta, timezone

import pytest

from authz.resolver import Access, resolve
from crypto.envelope import LinkCredential, open_link_key
from crypto.keys import KeySession
from errors import ExpiredGrant, IntegrityError, NotFound, PermissionDenied
from sharing.grants import (
    GrantRef,
    grant_link,
    grant_to_user,
    list_grants,
    purge_expired,
    revoke,
    shared_with_me,
    update_grant,
)
from storage.file_manager import create_node, open_key, read_node


@pytest.fixture
def shared(store, blobs, login):
    """alice owns projects/ with plan.md inside"""
    alice, session = login("alice")
    folder, folder_key = create_node(store, blobs, session, "projects", is_directory=True)
    plan, plan_key = create_node(store, blobs, session, "plan.md", parent_id=folder.node_id,
                                 parent_key=folder_key, content=b"# plan")
    return alice, session, (folder, folder_key), (plan, plan_key)


def test_user_grant_lets_grantee_read(store, blobs, accounts, shared, login):
    _, session, (folder, folder_key), (plan, _) = shared
    bob, bob_session = login("bob")

    grant = grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id)

    assert not grant.edit
    node_key = open_key(store, bob_session, plan.node_id)
    assert read_node(store, blobs, bob_session, plan.node_id, node_key).content == b"# plan"
    assert [g.node_id for g in shared_with_me(store, bob_session)] == [folder.node_id]


def test_grant_is_an_upsert(store, accounts, shared, login):
    _, session, (folder, folder_key), _ = shared
    bob, _ = login("bob")
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id, edit=False)
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id, edit=True)

    grants = store.snapshot().user_grants_on(folder.node_id)
    assert len(grants) == 1
    assert grants[0].edit


def test_cannot_share_with_self_or_owner(store, accounts, shared, login):
    alice, session, (folder, folder_key), _ = shared
    bob, bob_session = login("bob")
    with pytest.raises(ValueError):
        grant_to_user(store, accounts, session, folder.node_id, folder_key, alice.user_id)

    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id, edit=True)
    with pytest.raises(ValueError):
        grant_to_user(store, accounts, bob_session, folder.node_id, folder_key, alice.user_id)


def test_unknown_grantee(store, accounts, shared):
    _, session, (folder, folder_key), _ = shared
    with pytest.raises(NotFound):
        grant_to_user(store, accounts, session, folder.node_id, folder_key, "nobody")


def test_viewer_cannot_reshare(store, accounts, shared, login):
    _, session, (folder, folder_key), _ = shared
    bob, bob_session = login("bob")
    carol, _ = login("carol")
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id, edit=False)

    bob_key = open_key(store, bob_session, folder.node_id)
    with pytest.raises(PermissionDenied):
        grant_to_user(store, accounts, bob_session, folder.node_id, bob_key, carol.user_id)
    with pytest.raises(PermissionDenied):
        grant_link(store, bob_session, folder.node_id, bob_key)
    assert store.snapshot().user_grant(folder.node_id, carol.user_id) is None


def test_editor_can_reshare(store, blobs, accounts, shared, login):
    _, session, (folder, folder_key), (plan, _) = shared
    bob, bob_session = login("bob")
    carol, carol_session = login("carol")
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id, edit=True)

    bob_key = open_key(store, bob_session, folder.node_id)
    grant_to_user(store, accounts, bob_session, folder.node_id, bob_key, carol.user_id)
    carol_key = open_key(store, carol_session, plan.node_id)
    assert read_node(store, blobs, carol_session, plan.node_id, carol_key).content == b"# plan"


def test_revoke_removes_only_that_grant(store, accounts, shared, login):
    _, session, (folder, folder_key), (plan, plan_key) = shared
    bob, bob_session = login("bob")
    carol, _ = login("carol")
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id)
    grant_to_user(store, accounts, session, folder.node_id, folder_key, carol.user_id)
    node_before = store.snapshot().node(plan.node_id)

    revoke(store, session, GrantRef.user(folder.node_id, bob.user_id))

    snapshot = store.snapshot()
    assert resolve(snapshot, bob.user_id, plan.node_id) == Access.DENIED
    assert resolve(snapshot, carol.user_id, plan.node_id) == Access.VIEWER
    assert snapshot.node(plan.node_id) == node_before
    with pytest.raises(PermissionDenied):
        open_key(store, bob_session, plan.node_id)
    with pytest.raises(NotFound):
        revoke(store, session, GrantRef.user(folder.node_id, bob.user_id))


def test_list_grants(store, accounts, shared, login):
    _, session, (folder, folder_key), _ = shared
    bob, bob_session = login("bob")
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id)
    share = grant_link(store, session, folder.node_id, folder_key)

    grants = list_grants(store, session, folder.node_id)
    assert {getattr(g, "link_id", None) for g in grants} == {None, share.link_id}
    with pytest.raises(PermissionDenied):
        list_grants(store, bob_session, folder.node_id)


def test_link_holder_can_read(store, blobs, shared):
    _, session, (folder, folder_key), (plan, _) = shared
    share = grant_link(store, session, folder.node_id, folder_key)

    with KeySession.anonymous() as anonymous:
        node_key = open_key(store, anonymous, plan.node_id, link=share.credential())
        content = read_node(store, blobs, anonymous, plan.node_id, node_key, link=share.credential()).content
    assert content == b"# plan"
    assert share.link_id in share.url("https://vault.example/")
    assert store.snapshot().link_grant(share.link_id).password_protected is False


def test_link_secret_is_not_stored(store, shared, tmp_path):
    _, session, (folder, folder_key), _ = shared
    share = grant_link(store, session, folder.node_id, folder_key, password="correct horse")
    raw = (tmp_path / "vault.json").read_bytes()
    assert share.secret not in raw
    assert share.url("https://x").split("#")[1].encode() not in raw
    assert b"correct horse" not in raw


def test_link_editor_can_upload(store, blobs, shared):
    _, session, (folder, folder_key), _ = shared
    share = grant_link(store, session, folder.node_id, folder_key, edit=True)

    with KeySession.anonymous() as anonymous:
        link = share.credential()
        parent_key = open_key(store, anonymous, folder.node_id, link=link)
        node, _ = create_node(store, blobs, anonymous, "upload.txt", parent_id=folder.node_id,
                              parent_key=parent_key, content=b"from a link", link=link)
    assert node.uploader_id == "anonymous"
    assert node.owner_id == shared[0].user_id


def test_anonymous_cannot_create_roots(store, blobs):
    with KeySession.anonymous() as anonymous:
        with pytest.raises(PermissionDenied):
            create_node(store, blobs, anonymous, "root", is_directory=True)


def test_link_expiry(store, shared):
    _, session, (folder, folder_key), _ = shared
    share = grant_link(store, session, folder.node_id, folder_key, expires_in=3600)
    never = grant_link(store, session, folder.node_id, folder_key, expires_in=0)

    assert never.expires_at is None
    later = share.expires_at + timedelta(seconds=1)
    snapshot = store.snapshot()
    assert resolve(snapshot, None, folder.node_id, share.credential()) == Access.VIEWER
    assert resolve(snapshot, None, folder.node_id, share.credential(), now=later) == Access.DENIED
    assert resolve(snapshot, None, folder.node_id, never.credential(), now=later) == Access.VIEWER


def test_expired_link_is_refused(store, shared):
    _, session, (folder, folder_key), _ = shared
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    share = grant_link(store, session, folder.node_id, folder_key, expires_at=past)
    with KeySession.anonymous() as anonymous:
        with pytest.raises(ExpiredGrant):
            open_key(store, anonymous, folder.node_id, link=share.credential())


def test_malformed_link_secret_is_denied(store, shared):
    _, session, (folder, folder_key), (plan, _) = shared
    plain = grant_link(store, session, folder.node_id, folder_key)
    protected = grant_link(store, session, folder.node_id, folder_key, password="pw")
    snapshot = store.snapshot()

    for share, password in ((plain, None), (protected, "pw")):
        short = LinkCredential(share.link_id, b"short", password)
        assert resolve(snapshot, None, plan.node_id, short) == Access.DENIED
        with pytest.raises(IntegrityError):
            open_link_key(snapshot.link_grant(share.link_id), short)
        with KeySession.anonymous() as anonymous:
            with pytest.raises(PermissionDenied):
                open_key(store, anonymous, plan.node_id, link=short)


def test_expiry_arguments_are_exclusive(store, shared):
    _, session, (folder, folder_key), _ = shared
    with pytest.raises(ValueError):
        grant_link(store, session, folder.node_id, folder_key,
                   expires_at=datetime.now(timezone.utc), expires_in=60)


def test_update_edit_flag_keeps_wrapped_key(store, shared):
    _, session, (folder, folder_key), _ = shared
    share = grant_link(store, session, folder.node_id, folder_key)
    before = store.snapshot().link_grant(share.link_id)

    updated = update_grant(store, session, GrantRef.link(share.link_id), edit=True)

    assert updated.edit
    assert (updated.wrapped_key, updated.key_nonce) == (before.wrapped_key, before.key_nonce)
    assert resolve(store.snapshot(), None, folder.node_id, share.credential()) == Access.EDITOR


def test_update_user_grant_edit_flag(store, accounts, shared, login):
    _, session, (folder, folder_key), _ = shared
    bob, _ = login("bob")
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id, edit=True)
    update_grant(store, session, GrantRef.user(folder.node_id, bob.user_id), edit=False)
    assert resolve(store.snapshot(), bob.user_id, folder.node_id) == Access.VIEWER
    with pytest.raises(ValueError):
        update_grant(store, session, GrantRef.user(folder.node_id, bob.user_id), new_password="x")


def test_change_link_password(store, shared):
    _, session, (folder, folder_key), (plan, plan_key) = shared
    share = grant_link(store, session, folder.node_id, folder_key, password="old")
    before = store.snapshot().link_grant(share.link_id)
    ref = GrantRef.link(share.link_id)

    with pytest.raises(ValueError):
        update_grant(store, session, ref, new_password="new")
    updated = update_grant(store, session, ref, new_password="new",
                           node_key=folder_key, link_secret=share.secret, old_password="old")

    assert updated.key_nonce != before.key_nonce
    snapshot = store.snapshot()
    assert resolve(snapshot, None, plan.node_id, share.credential("new")) == Access.VIEWER
    assert resolve(snapshot, None, plan.node_id, share.credential("old")) == Access.DENIED

    with KeySession.anonymous() as anonymous:
        with pytest.raises(IntegrityError):
            open_link_key(snapshot.link_grant(share.link_id), share.credential("old"))
        opened = open_key(store, anonymous, plan.node_id, link=share.credential("new"))
        assert opened.same_key(plan_key)


def test_remove_link_password(store, shared):
    _, session, (folder, folder_key), _ = shared
    share = grant_link(store, session, folder.node_id, folder_key, password="pw")
    update_grant(store, session, GrantRef.link(share.link_id), new_password=None,
                 node_key=folder_key, link_secret=share.secret, old_password="pw")
    grant = store.snapshot().link_grant(share.link_id)
    assert not grant.password_protected
    assert grant.kdf_iterations is None
    assert resolve(store.snapshot(), None, folder.node_id, share.credential()) == Access.VIEWER


def test_password_change_needs_the_current_secret(store, shared):
    _, session, (folder, folder_key), (plan, _) = shared
    share = grant_link(store, session, folder.node_id, folder_key, password="pw")
    plain = grant_link(store, session, folder.node_id, folder_key)
    before = store.snapshot().link_grant(share.link_id)
    ref = GrantRef.link(share.link_id)

    with pytest.raises(IntegrityError):
        update_grant(store, session, ref, new_password="new", node_key=folder_key,
                     link_secret=b"\x00" * 32, old_password="pw")
    with pytest.raises(IntegrityError):
        update_grant(store, session, ref, new_password="new", node_key=folder_key,
                     link_secret=share.secret, old_password="wrong")
    with pytest.raises(IntegrityError):
        update_grant(store, session, ref, new_password="new", node_key=folder_key,
                     link_secret=share.secret)
    with pytest.raises(IntegrityError):
        update_grant(store, session, GrantRef.link(plain.link_id), new_password="new",
                     node_key=folder_key, link_secret=share.secret)

    snapshot = store.snapshot()
    assert snapshot.link_grant(share.link_id) == before
    assert resolve(snapshot, None, plan.node_id, share.credential("pw")) == Access.VIEWER
    assert resolve(snapshot, None, plan.node_id, plain.credential()) == Access.VIEWER


def test_grants_count_against_the_owner(store, accounts, shared, login):
    alice, session, (folder, folder_key), _ = shared
    bob, _ = login("bob")
    before = store.snapshot().used_space(alice.user_id)

    user_grant = grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id)
    share = grant_link(store, session, folder.node_id, folder_key, password="pw")
    link_grant = store.snapshot().link_grant(share.link_id)
    assert store.snapshot().used_space(alice.user_id) == \
        before + user_grant.footprint() + link_grant.footprint()

    revoke(store, session, GrantRef.user(folder.node_id, bob.user_id))
    revoke(store, session, GrantRef.link(share.link_id))
    assert store.snapshot().used_space(alice.user_id) == before
    assert store.snapshot().used_space(bob.user_id) == 0


def test_purge_expired(store, accounts, shared, login):
    _, session, (folder, folder_key), _ = shared
    bob, bob_session = login("bob")
    past = datetime.now(timezone.utc) - timedelta(seconds=10)
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id, expires_at=past)
    grant_link(store, session, folder.node_id, folder_key, expires_at=past)
    live = grant_link(store, session, folder.node_id, folder_key)

    assert shared_with_me(store, bob_session) == []
    assert purge_expired(store) == 2
    assert [g.link_id for g in store.snapshot().link_grants()] == [live.link_id]
    assert store.snapshot().user_grants() == []
    assert purge_expired(store) == 0


def test_purge_refunds_space(store, accounts, shared, login):
    alice, session, (folder, folder_key), _ = shared
    bob, _ = login("bob")
    before = store.snapshot().used_space(alice.user_id)
    past = datetime.now(timezone.utc) - timedelta(seconds=10)
    grant_to_user(store, accounts, session, folder.node_id, folder_key, bob.user_id, expires_at=past)
    grant_link(store, session, folder.node_id, folder_key, expires_at=past)
    assert store.snapshot().used_space(alice.user_id) > before

    purge_expired(store)
    assert store.snapshot().used_space(alice.user_id) == before
