"""
Node operations: create, read, rename, delete and list files and folders.

The caller works with unwrapped keys held in its `KeySession`; what reaches
the store and the blob store is only ciphertext and wrapped keys. Every
operation is checked with the authorization resolver against the snapshot
taken at the start of the request, and every write happens in one store
transaction.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from authz.resolver import Access, require
from crypto.envelope import LinkCredential, create_node as new_node_key, open_node_key, verify_node_key
from crypto.keys import KeyHandle, KeySession
from crypto.primitives import b64d
from errors import ConsistencyError, NotFound, PermissionDenied, QuotaExceeded

from .blobs import BlobStore
from .models import Node
from .store import IVaultStore, VaultSnapshot

logger = logging.getLogger(__name__)


@dataclass
class DecryptedNode:
    """What the UI layer gets: plaintext attributes, never wrapped keys."""
    node_id: str
    parent_id: Optional[str]
    owner_id: str
    is_directory: bool
    name: str
    mime: Optional[str]
    content: Optional[bytes]
    size: int
    created_at: str
    modified_at: str


# ============================================================================
# Helper methods
# ============================================================================

def _get_node(snapshot: VaultSnapshot, node_id: str) -> Node:
    node = snapshot.node(node_id)
    if node is None:
        raise NotFound(node_id)
    return node


def _principal_total_space(accounts, owner_id: str) -> Optional[int]:
    if accounts is None:
        return None
    return accounts.get_user(owner_id).total_space


# ============================================================================
# Public operations
# ============================================================================

def open_key(
    store: IVaultStore,
    session: KeySession,
    node_id: str,
    *,
    link: Optional[LinkCredential] = None,
) -> KeyHandle:
    """Authorize, then recover the node key along the shortest grant path."""
    snapshot = store.snapshot()
    require(snapshot, session.principal_id, node_id, Access.VIEWER, link)
    return open_node_key(snapshot, node_id, session, link)


def create_node(
    store: IVaultStore,
    blobs: BlobStore,
    session: KeySession,
    name: str,
    *,
    parent_id: Optional[str] = None,
    parent_key: Optional[KeyHandle] = None,
    content: Optional[bytes] = None,
    mime: Optional[str] = None,
    is_directory: bool = False,
    link: Optional[LinkCredential] = None,
    accounts=None,
) -> Tuple[Node, KeyHandle]:
    """
    Create a file or folder.

    Args:
        store: Vault store
        blobs: Ciphertext blob store
        session: Caller's key session
        name: Plaintext name, encrypted before it leaves this function
        parent_id: Folder to create in, None for a new tree root owned by the caller
        parent_key: Unwrapped key of the parent folder (required with parent_id)
        content: File content (files only)
        mime: Optional MIME type
        is_directory: Create a folder
        link: Link credential when an anonymous editor uploads through a link
        accounts: AccountManager for quota checks (optional)

    Returns:
        (persisted Node, the new node's key handle owned by `session`)
    """
    if not name:
        raise ValueError("name cannot be empty")
    if is_directory and content is not None:
        raise ValueError("folders have no content")

    snapshot = store.snapshot()
    if parent_id is None:
        if session.is_anonymous:
            raise PermissionDenied("anonymous sessions cannot create tree roots")
        owner_id = session.principal_id
        node_key, wrapped = new_node_key(None, session.public_key_pem)
    else:
        require(snapshot, session.principal_id, parent_id, Access.EDITOR, link)
        parent = _get_node(snapshot, parent_id)
        if not parent.is_directory:
            raise ValueError("Cannot set file parent to non-directories")
        if parent_key is None:
            raise ValueError("parent key required to create a child node")
        verify_node_key(parent, parent_key)
        owner_id = parent.owner_id
        node_key, wrapped = new_node_key(parent_key)
    session.adopt(node_key)

    # one fresh nonce per attribute
    enc_name, name_nonce = node_key.encrypt(name.encode("utf-8"))
    enc_mime = mime_nonce = None
    if mime is not None:
        enc_mime, mime_nonce = node_key.encrypt(mime.encode("utf-8"))
    ciphertext = content_nonce = None
    if not is_directory:
        ciphertext, content_nonce = node_key.encrypt(content or b"")

    node = Node.new(
        owner_id=owner_id,
        uploader_id=session.principal_id or "anonymous",
        parent_id=parent_id,
        is_directory=is_directory,
        wrapped=wrapped,
        encrypted_name=enc_name,
        name_nonce=name_nonce,
        encrypted_mime=enc_mime,
        mime_nonce=mime_nonce,
        content_nonce=content_nonce,
        size=len(ciphertext) if ciphertext is not None else 0,
    )

    total_space = _principal_total_space(accounts, owner_id)
    if ciphertext is not None:
        blobs.put(node.content_ref, ciphertext)
    try:
        with store.transaction() as state:
            if parent_id is not None and state.node(parent_id) is None:
                raise ConsistencyError(f"parent {parent_id} disappeared")
            used = state.used_space(owner_id)
            if total_space is not None and used + node.footprint() > total_space:
                raise QuotaExceeded(f"{owner_id} has {total_space - used} bytes left")
            state.put_node(node)
    except Exception:
        if ciphertext is not None:
            blobs.delete(node.content_ref)
        raise

    logger.info("created %s %s under %s", "folder" if is_directory else "file",
                node.node_id, parent_id or "root")
    return node, node_key


def read_node(
    store: IVaultStore,
    blobs: BlobStore,
    session: KeySession,
    node_id: str,
    node_key: KeyHandle,
    *,
    link: Optional[LinkCredential] = None,
    with_content: bool = True,
) -> DecryptedNode:
    """Fetch a node's ciphertext and decrypt it locally with `node_key`."""
    snapshot = store.snapshot()
    require(snapshot, session.principal_id, node_id, Access.VIEWER, link)
    node = _get_node(snapshot, node_id)

    name = node_key.decrypt(b64d(node.encrypted_name), b64d(node.name_nonce)).decode("utf-8")
    mime = None
    if node.encrypted_mime is not None:
        mime = node_key.decrypt(b64d(node.encrypted_mime), b64d(node.mime_nonce)).decode("utf-8")
    content = None
    if with_content and not node.is_directory:
        content = node_key.decrypt(blobs.get(node.content_ref), b64d(node.content_nonce))

    return DecryptedNode(
        node_id=node.node_id,
        parent_id=node.parent_id,
        owner_id=node.owner_id,
        is_directory=node.is_directory,
        name=name,
        mime=mime,
        content=content,
        size=node.size,
        created_at=node.created_at,
        modified_at=node.modified_at,
    )


def rename_node(
    store: IVaultStore,
    session: KeySession,
    node_id: str,
    node_key: KeyHandle,
    new_name: str,
    *,
    link: Optional[LinkCredential] = None,
) -> Node:
    """Re-encrypt the node's name under a fresh nonce. The key is unchanged."""
    if not new_name:
        raise ValueError("name cannot be empty")
    snapshot = store.snapshot()
    require(snapshot, session.principal_id, node_id, Access.EDITOR, link)
    verify_node_key(_get_node(snapshot, node_id), node_key)

    enc_name, name_nonce = node_key.encrypt(new_name.encode("utf-8"))
    with store.transaction() as state:
        current = _get_node(state, node_id)
        renamed = current.renamed(enc_name, name_nonce)
        state.put_node(renamed)
    logger.info("renamed node %s", node_id)
    return renamed


def delete_node(
    store: IVaultStore,
    blobs: BlobStore,
    session: KeySession,
    node_id: str,
    *,
    link: Optional[LinkCredential] = None,
) -> List[str]:
    """
    Delete a node and everything below it, with the grants attached to them.

    A tree root can only be deleted by its owner; anything else needs edit
    access on its parent folder. Returns the deleted node ids.
    """
    snapshot = store.snapshot()
    node = snapshot.node(node_id)
    if node is None or node.parent_id is None:
        require(snapshot, session.principal_id, node_id, Access.OWNER, link)
    else:
        require(snapshot, session.principal_id, node.parent_id, Access.EDITOR, link)

    with store.transaction() as state:
        target = _get_node(state, node_id)
        doomed = [target] + state.descendants(node_id)
        for victim in doomed:
            for grant in state.user_grants_on(victim.node_id):
                state.remove_user_grant(grant.node_id, grant.user_id)
            for grant in state.link_grants_on(victim.node_id):
                state.remove_link_grant(grant.link_id)
            state.remove_node(victim.node_id)

    for victim in doomed:
        if victim.content_ref:
            blobs.delete(victim.content_ref)
    logger.info("deleted node %s (%d nodes)", node_id, len(doomed))
    return [victim.node_id for victim in doomed]


def list_children(
    store: IVaultStore,
    session: KeySession,
    node_id: str,
    *,
    link: Optional[LinkCredential] = None,
) -> List[Node]:
    snapshot = store.snapshot()
    require(snapshot, session.principal_id, node_id, Access.VIEWER, link)
    return snapshot.children(node_id)


def list_roots(store: IVaultStore, session: KeySession) -> List[Node]:
    """Tree roots owned by the session's principal."""
    if session.is_anonymous:
        return []
    return store.snapshot().roots(session.principal_id)
