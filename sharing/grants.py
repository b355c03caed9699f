"""
Sharing & Grant Model

A grant attaches to one node and covers that node's whole subtree. Each
grant carries its own wrapped copy of the node key:
- user grants: RSA-OAEP under the grantee's public key
- link grants: AES-256-GCM under the link secret, or under
  PBKDF2(password, salt=link secret) for password protected links

Creating, changing or revoking a grant never touches the node key itself or
any other grant.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

import settings
from authz.resolver import Access, require
from crypto.envelope import LinkCredential, link_wrapping_key, open_link_key, verify_node_key, wrap_under
from crypto.keys import KeyHandle, KeySession
from crypto.primitives import b64e, new_link_secret, wrap_for_public_key
from errors import ConsistencyError, IntegrityError, NotFound
from storage.models import LinkGrant, UserGrant, parse_iso
from storage.store import IVaultStore, VaultSnapshot

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


@dataclass(frozen=True)
class GrantRef:
    """Points at one grant: a (node, user) pair or a link id."""
    kind: str
    node_id: Optional[str] = None
    user_id: Optional[str] = None
    link_id: Optional[str] = None

    @classmethod
    def user(cls, node_id: str, user_id: str) -> "GrantRef":
        return cls(kind="user", node_id=node_id, user_id=user_id)

    @classmethod
    def link(cls, link_id: str) -> "GrantRef":
        return cls(kind="link", link_id=link_id)


@dataclass(frozen=True)
class LinkShare:
    """
    Returned once to the link creator. The secret is never stored server
    side; it travels in the share URL fragment.
    """
    link_id: str
    secret: bytes
    expires_at: Optional[datetime]

    def credential(self, password: Optional[str] = None) -> LinkCredential:
        return LinkCredential(link_id=self.link_id, secret=self.secret, password=password)

    def url(self, base: str) -> str:
        return f"{base.rstrip('/')}/share?linkId={self.link_id}#{b64e(self.secret)}"


# ============================================================================
# Helper methods
# ============================================================================

def _resolve_expiry(
    expires_at: Optional[datetime],
    expires_in: Optional[Union[int, timedelta]],
) -> Optional[datetime]:
    if expires_at is not None and expires_in is not None:
        raise ValueError("give either expires_at or expires_in, not both")
    if expires_in is not None:
        if isinstance(expires_in, timedelta):
            expires_in = int(expires_in.total_seconds())
        # a non-positive duration means the link never expires
        if expires_in <= 0:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return expires_at


def _node_for_grant(snapshot: VaultSnapshot, node_id: str, node_key: KeyHandle):
    node = snapshot.node(node_id)
    if node is None:
        raise NotFound(node_id)
    verify_node_key(node, node_key)
    return node


def _grant_node_id(snapshot: VaultSnapshot, ref: GrantRef) -> str:
    if ref.kind == "user":
        if snapshot.user_grant(ref.node_id, ref.user_id) is None:
            raise NotFound("grant not found")
        return ref.node_id
    if ref.kind == "link":
        grant = snapshot.link_grant(ref.link_id)
        if grant is None:
            raise NotFound("grant not found")
        return grant.node_id
    raise ValueError(f"unknown grant kind {ref.kind!r}")


def _check_link_secret(
    grant: LinkGrant,
    secret: bytes,
    password: Optional[str],
    node_key: KeyHandle,
) -> None:
    """Raise IntegrityError unless `secret` (and `password`) open the link as it stands."""
    if grant.password_protected and password is None:
        raise IntegrityError("current link password required")
    with open_link_key(grant, LinkCredential(grant.link_id, secret, password)) as opened:
        if not opened.same_key(node_key):
            raise IntegrityError("link does not wrap this node key")


# ============================================================================
# Public operations
# ============================================================================

def grant_to_user(
    store: IVaultStore,
    accounts,
    session: KeySession,
    node_id: str,
    node_key: KeyHandle,
    grantee_id: str,
    edit: bool = False,
    *,
    expires_at: Optional[datetime] = None,
    link: Optional[LinkCredential] = None,
) -> UserGrant:
    """
    Share a node with a registered principal.

    The caller needs edit access on the node; without it the request fails
    with PermissionDenied rather than falling back to a view-only grant.
    Granting again to the same principal replaces the earlier grant.
    """
    snapshot = store.snapshot()
    require(snapshot, session.principal_id, node_id, Access.EDITOR, link)
    node = _node_for_grant(snapshot, node_id, node_key)
    if grantee_id == session.principal_id:
        raise ValueError("Cannot share file with yourself")
    if grantee_id == node.owner_id:
        raise ValueError("Cannot share file with owner")
    grantee = accounts.get_user(grantee_id)

    wrapped_key = wrap_for_public_key(node_key.material, accounts.public_key_pem(grantee))
    grant = UserGrant.new(node_id, grantee.user_id, edit, wrapped_key, expires_at)
    with store.transaction() as state:
        if state.node(node_id) is None:
            raise ConsistencyError(f"node {node_id} disappeared")
        state.put_user_grant(grant)
    logger.info("shared node %s with principal %s (%s)", node_id, grantee.user_id,
                "edit" if edit else "view")
    return grant


def grant_link(
    store: IVaultStore,
    session: KeySession,
    node_id: str,
    node_key: KeyHandle,
    edit: bool = False,
    *,
    password: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    expires_in: Optional[Union[int, timedelta]] = None,
    link: Optional[LinkCredential] = None,
) -> LinkShare:
    """
    Create an anonymous share link for a node.

    Args:
        store: Vault store
        session: Caller's key session
        node_id: Node to share
        node_key: The node's unwrapped key
        edit: Whether link holders may edit
        password: Optional password; a leaked URL alone is then not enough
        expires_at: Absolute expiry (UTC)
        expires_in: Relative expiry in seconds or as timedelta; <= 0 never expires
        link: Link credential when an anonymous editor re-shares

    Returns:
        LinkShare carrying the link id and the secret for the URL
    """
    snapshot = store.snapshot()
    require(snapshot, session.principal_id, node_id, Access.EDITOR, link)
    _node_for_grant(snapshot, node_id, node_key)
    expires = _resolve_expiry(expires_at, expires_in)

    secret = new_link_secret()
    iterations = settings.KDF_ITERATIONS if password is not None else None
    with link_wrapping_key(secret, password, iterations) as wrapping_key:
        wrapped = wrap_under(node_key, destination_key=wrapping_key)
    grant = LinkGrant.new(
        node_id,
        edit,
        wrapped,
        password_protected=password is not None,
        kdf_iterations=iterations,
        expires_at=expires,
    )
    with store.transaction() as state:
        if state.node(node_id) is None:
            raise ConsistencyError(f"node {node_id} disappeared")
        state.put_link_grant(grant)
    logger.info("created link %s for node %s (%s%s)", grant.link_id, node_id,
                "edit" if edit else "view", ", password" if password is not None else "")
    return LinkShare(
        link_id=grant.link_id,
        secret=secret,
        expires_at=parse_iso(grant.expires_at) if grant.expires_at else None,
    )


def revoke(
    store: IVaultStore,
    session: KeySession,
    ref: GrantRef,
    *,
    link: Optional[LinkCredential] = None,
) -> None:
    """Delete one grant. The node key and every other grant stay as they are."""
    snapshot = store.snapshot()
    node_id = _grant_node_id(snapshot, ref)
    require(snapshot, session.principal_id, node_id, Access.EDITOR, link)
    with store.transaction() as state:
        _grant_node_id(state, ref)
        if ref.kind == "user":
            state.remove_user_grant(ref.node_id, ref.user_id)
        else:
            state.remove_link_grant(ref.link_id)
    logger.info("revoked %s grant on node %s", ref.kind, node_id)


def update_grant(
    store: IVaultStore,
    session: KeySession,
    ref: GrantRef,
    edit: Optional[bool] = None,
    *,
    new_password=UNSET,
    node_key: Optional[KeyHandle] = None,
    link_secret: Optional[bytes] = None,
    old_password: Optional[str] = None,
    link: Optional[LinkCredential] = None,
) -> Union[UserGrant, LinkGrant]:
    """
    Change a grant in place.

    Changing only the edit flag re-wraps nothing. Changing a link's password
    (a string sets or replaces it, None removes it) re-wraps the node key
    with a fresh nonce and needs both the node key and the link secret.
    The secret, plus `old_password` when the link has one, must open the
    link as it is now; otherwise IntegrityError is raised and nothing changes.
    """
    snapshot = store.snapshot()
    node_id = _grant_node_id(snapshot, ref)
    require(snapshot, session.principal_id, node_id, Access.EDITOR, link)

    rewrap = None
    if new_password is not UNSET:
        if ref.kind != "link":
            raise ValueError("only link grants have a password")
        if node_key is None or link_secret is None:
            raise ValueError("node key and link secret are required to change a link password")
        _node_for_grant(snapshot, node_id, node_key)
        _check_link_secret(snapshot.link_grant(ref.link_id), link_secret, old_password, node_key)
        iterations = settings.KDF_ITERATIONS if new_password is not None else None
        with link_wrapping_key(link_secret, new_password, iterations) as wrapping_key:
            rewrap = (wrap_under(node_key, destination_key=wrapping_key),
                      new_password is not None, iterations)

    with store.transaction() as state:
        _grant_node_id(state, ref)
        if ref.kind == "user":
            grant = state.user_grant(ref.node_id, ref.user_id)
            if edit is not None:
                grant = grant.with_edit(edit)
            state.put_user_grant(grant)
        else:
            grant = state.link_grant(ref.link_id)
            if rewrap is not None and grant.wrapped_key != snapshot.link_grant(ref.link_id).wrapped_key:
                raise ConsistencyError(f"link {ref.link_id} changed during update, retry")
            if edit is not None:
                grant = grant.with_edit(edit)
            if rewrap is not None:
                grant = grant.rewrapped(*rewrap)
            state.put_link_grant(grant)
    logger.info("updated %s grant on node %s", ref.kind, node_id)
    return grant


def list_grants(
    store: IVaultStore,
    session: KeySession,
    node_id: str,
    *,
    link: Optional[LinkCredential] = None,
) -> List[Union[UserGrant, LinkGrant]]:
    """Grants attached directly to a node. Visible to its editors."""
    snapshot = store.snapshot()
    require(snapshot, session.principal_id, node_id, Access.EDITOR, link)
    return [*snapshot.user_grants_on(node_id), *snapshot.link_grants_on(node_id)]


def shared_with_me(store: IVaultStore, session: KeySession, now: Optional[datetime] = None) -> List[UserGrant]:
    """Unexpired user grants naming the session's principal."""
    if session.is_anonymous:
        return []
    return [
        g for g in store.snapshot().user_grants_for(session.principal_id)
        if not g.is_expired(now)
    ]


def purge_expired(store: IVaultStore, now: Optional[datetime] = None) -> int:
    """Delete every grant past its expiry. Returns how many were removed."""
    removed = 0
    with store.transaction() as state:
        for grant in state.link_grants():
            if grant.is_expired(now):
                state.remove_link_grant(grant.link_id)
                removed += 1
        for grant in state.user_grants():
            if grant.is_expired(now):
                state.remove_user_grant(grant.node_id, grant.user_id)
                removed += 1
    if removed:
        logger.info("purged %d expired grants", removed)
    return removed
