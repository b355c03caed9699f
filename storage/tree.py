"""
Tree Mutation Protocol: moving a node to a new parent.

    REQUESTED -> KEY_REWRAPPED -> COMMITTED
          \             \
           +-------------+--> ABORTED

The node's key is re-wrapped under the destination's key with a new nonce
and persisted together with the new parent pointer in one transaction.
Content and grants are untouched: a grant higher up that no longer covers the
node simply stops applying, it is not deleted.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from authz.resolver import Access, require
from crypto.envelope import LinkCredential, WrappedKey, verify_node_key, wrap_under
from crypto.keys import KeyHandle, KeySession
from errors import ConsistencyError, CycleRejected, NotFound, PermissionDenied, VaultError

from .models import Node
from .store import IVaultStore, VaultSnapshot

logger = logging.getLogger(__name__)


class MoveState(Enum):
    REQUESTED = "requested"
    KEY_REWRAPPED = "key_rewrapped"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class MoveRequest:
    node_id: str
    new_parent_id: Optional[str]
    state: MoveState = MoveState.REQUESTED
    wrapped: Optional[WrappedKey] = field(default=None, repr=False)
    error: Optional[VaultError] = None

    def advance(self, state: MoveState) -> None:
        logger.debug("move %s: %s -> %s", self.node_id, self.state.value, state.value)
        self.state = state

    def abort(self, error: VaultError) -> None:
        self.error = error
        self.advance(MoveState.ABORTED)


def is_descendant(snapshot: VaultSnapshot, node_id: str, candidate_id: str) -> bool:
    """True if `candidate_id` is `node_id` itself or lies somewhere below it."""
    return any(n.node_id == node_id for n in snapshot.ancestor_chain(candidate_id))


def _check_move(
    snapshot: VaultSnapshot,
    session: KeySession,
    node: Node,
    new_parent_id: Optional[str],
    link: Optional[LinkCredential],
) -> Optional[Node]:
    """Validate a move against a snapshot. Returns the destination node (None for root)."""
    require(snapshot, session.principal_id, node.node_id, Access.EDITOR, link)
    if new_parent_id is None:
        if session.principal_id != node.owner_id:
            raise PermissionDenied("only the owner can move a node to the tree root")
        return None

    destination = snapshot.node(new_parent_id)
    if destination is None:
        raise NotFound("Destination file not found")
    require(snapshot, session.principal_id, new_parent_id, Access.EDITOR, link)
    if not destination.is_directory:
        raise ValueError("Cannot set file parent to non-directories")
    if destination.owner_id != node.owner_id:
        raise PermissionDenied("cannot move a node into another owner's tree")
    if is_descendant(snapshot, node.node_id, new_parent_id):
        raise CycleRejected(f"{new_parent_id} lies below {node.node_id}")
    return destination


def move_node(
    store: IVaultStore,
    session: KeySession,
    node_id: str,
    new_parent_id: Optional[str],
    node_key: KeyHandle,
    parent_key: Optional[KeyHandle] = None,
    *,
    link: Optional[LinkCredential] = None,
) -> MoveRequest:
    """
    Move `node_id` under `new_parent_id` (None = the owner's tree root).

    Args:
        store: Vault store
        session: Caller's key session
        node_id: Node to move
        new_parent_id: Destination folder or None
        node_key: The node's unwrapped key, proving the caller can open it
        parent_key: The destination folder's unwrapped key (not needed for root)
        link: Link credential for anonymous editors

    Returns:
        The MoveRequest in state COMMITTED. On failure the request is marked
        ABORTED and the error is raised; nothing is persisted.
    """
    request = MoveRequest(node_id=node_id, new_parent_id=new_parent_id)
    try:
        snapshot = store.snapshot()
        node = snapshot.node(node_id)
        if node is None:
            raise NotFound("Source file not found")
        destination = _check_move(snapshot, session, node, new_parent_id, link)
        verify_node_key(node, node_key)

        if destination is None:
            request.wrapped = wrap_under(node_key, public_key_pem=session.public_key_pem)
        else:
            if parent_key is None:
                raise ValueError("destination key required to move into a folder")
            verify_node_key(destination, parent_key)
            request.wrapped = wrap_under(node_key, destination_key=parent_key)
        request.advance(MoveState.KEY_REWRAPPED)

        with store.transaction() as state:
            current = state.node(node_id)
            if current is None:
                raise NotFound("Source file not found")
            if (current.parent_id, current.wrapped_key) != (node.parent_id, node.wrapped_key):
                raise ConsistencyError(f"node {node_id} changed during move, retry")
            _check_move(state, session, current, new_parent_id, link)
            state.put_node(current.rewrapped(new_parent_id, request.wrapped))
        request.advance(MoveState.COMMITTED)
    except VaultError as e:
        request.abort(e)
        if isinstance(e, ConsistencyError):
            logger.error("move of %s aborted: %s", node_id, e)
        else:
            logger.warning("move of %s aborted: %s", node_id, type(e).__name__)
        raise
    except ValueError as e:
        request.advance(MoveState.ABORTED)
        logger.warning("move of %s rejected: %s", node_id, e)
        raise

    logger.info("moved node %s under %s", node_id, new_parent_id or "root")
    return request
