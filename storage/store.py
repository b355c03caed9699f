"""
Vault persistence: nodes, grants and per-owner space usage.

Readers take a `VaultSnapshot`, an immutable view of the whole vault as of the
moment they asked for it; they never lock. Writers go through
`transaction()`, which hands out a private working copy, and on success
writes the complete new state with one atomic file replace before publishing
it as the new current snapshot. Either every change made inside the block
becomes visible, or none does.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

import settings
from errors import ConsistencyError

from .models import LinkGrant, Node, UserGrant, user_grant_key

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


class VaultSnapshot:
    """Read-only view over the vault state."""

    def __init__(
        self,
        nodes: Mapping[str, Node],
        user_grants: Mapping[str, UserGrant],
        link_grants: Mapping[str, LinkGrant],
        usage: Mapping[str, int],
    ) -> None:
        self._nodes = MappingProxyType(dict(nodes))
        self._user_grants = MappingProxyType(dict(user_grants))
        self._link_grants = MappingProxyType(dict(link_grants))
        self._usage = MappingProxyType(dict(usage))

    # -- nodes ---------------------------------------------------------------

    def node(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def ancestor_chain(self, node_id: str) -> List[Node]:
        """
        Parent links from the node up to its tree root, closest first,
        target included. Empty if the node does not exist.
        """
        chain: List[Node] = []
        seen = set()
        current = self._nodes.get(node_id)
        while current is not None:
            if current.node_id in seen or len(chain) >= settings.MAX_TREE_DEPTH:
                raise ConsistencyError(f"parent pointer loop above node {node_id}")
            seen.add(current.node_id)
            chain.append(current)
            if current.parent_id is None:
                return chain
            parent = self._nodes.get(current.parent_id)
            if parent is None:
                raise ConsistencyError(f"node {current.node_id} points at missing parent")
            current = parent
        return chain

    def children(self, node_id: str) -> List[Node]:
        return [n for n in self._nodes.values() if n.parent_id == node_id]

    def descendants(self, node_id: str) -> List[Node]:
        """Every node below `node_id`, parents before children."""
        found: List[Node] = []
        frontier = [node_id]
        while frontier:
            current = frontier.pop(0)
            for child in self.children(current):
                found.append(child)
                frontier.append(child.node_id)
        return found

    def roots(self, owner_id: str) -> List[Node]:
        return [
            n for n in self._nodes.values()
            if n.parent_id is None and n.owner_id == owner_id
        ]

    # -- grants --------------------------------------------------------------

    def user_grant(self, node_id: str, user_id: str) -> Optional[UserGrant]:
        return self._user_grants.get(user_grant_key(node_id, user_id))

    def user_grants_on(self, node_id: str) -> List[UserGrant]:
        return [g for g in self._user_grants.values() if g.node_id == node_id]

    def user_grants_for(self, user_id: str) -> List[UserGrant]:
        return [g for g in self._user_grants.values() if g.user_id == user_id]

    def user_grants(self) -> List[UserGrant]:
        return list(self._user_grants.values())

    def link_grant(self, link_id: str) -> Optional[LinkGrant]:
        return self._link_grants.get(link_id)

    def link_grants_on(self, node_id: str) -> List[LinkGrant]:
        return [g for g in self._link_grants.values() if g.node_id == node_id]

    def link_grants(self) -> List[LinkGrant]:
        return list(self._link_grants.values())

    # -- space ---------------------------------------------------------------

    def used_space(self, owner_id: str) -> int:
        return self._usage.get(owner_id, 0)

    # -- serialisation -------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": _FORMAT_VERSION,
            "nodes": [n.to_dict() for n in self._nodes.values()],
            "user_grants": [g.to_dict() for g in self._user_grants.values()],
            "link_grants": [g.to_dict() for g in self._link_grants.values()],
            "usage": dict(self._usage),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultSnapshot":
        nodes = {d["node_id"]: Node.from_dict(d) for d in data.get("nodes", [])}
        user_grants = {}
        for d in data.get("user_grants", []):
            grant = UserGrant.from_dict(d)
            user_grants[grant.key] = grant
        link_grants = {d["link_id"]: LinkGrant.from_dict(d) for d in data.get("link_grants", [])}
        return cls(nodes, user_grants, link_grants, data.get("usage", {}))

    @classmethod
    def empty(cls) -> "VaultSnapshot":
        return cls({}, {}, {}, {})

    def working_copy(self) -> "VaultState":
        return VaultState(
            dict(self._nodes),
            dict(self._user_grants),
            dict(self._link_grants),
            dict(self._usage),
        )


class VaultState(VaultSnapshot):
    """Mutable working copy handed out inside a transaction."""

    def __init__(self, nodes, user_grants, link_grants, usage) -> None:
        # The views read through to these dicts, so mutations are visible
        # to the read helpers inherited from VaultSnapshot.
        self._nodes_rw: Dict[str, Node] = nodes
        self._user_grants_rw: Dict[str, UserGrant] = user_grants
        self._link_grants_rw: Dict[str, LinkGrant] = link_grants
        self._usage_rw: Dict[str, int] = usage
        self._nodes = MappingProxyType(nodes)
        self._user_grants = MappingProxyType(user_grants)
        self._link_grants = MappingProxyType(link_grants)
        self._usage = MappingProxyType(usage)

    def put_node(self, node: Node) -> None:
        previous = self._nodes_rw.get(node.node_id)
        self._nodes_rw[node.node_id] = node
        self.charge(node.owner_id, node.footprint() - (previous.footprint() if previous else 0))

    def remove_node(self, node_id: str) -> None:
        node = self._nodes_rw.pop(node_id)
        self.charge(node.owner_id, -node.footprint())

    def put_user_grant(self, grant: UserGrant) -> None:
        previous = self._user_grants_rw.get(grant.key)
        self._user_grants_rw[grant.key] = grant
        self._charge_grant(grant.node_id, grant.footprint() - (previous.footprint() if previous else 0))

    def remove_user_grant(self, node_id: str, user_id: str) -> None:
        grant = self._user_grants_rw.pop(user_grant_key(node_id, user_id))
        self._charge_grant(node_id, -grant.footprint())

    def put_link_grant(self, grant: LinkGrant) -> None:
        previous = self._link_grants_rw.get(grant.link_id)
        self._link_grants_rw[grant.link_id] = grant
        self._charge_grant(grant.node_id, grant.footprint() - (previous.footprint() if previous else 0))

    def remove_link_grant(self, link_id: str) -> None:
        grant = self._link_grants_rw.pop(link_id)
        self._charge_grant(grant.node_id, -grant.footprint())

    def _charge_grant(self, node_id: str, delta: int) -> None:
        # grants count against the owner of the node they are attached to
        node = self._nodes_rw.get(node_id)
        if node is not None:
            self.charge(node.owner_id, delta)

    def charge(self, owner_id: str, delta: int) -> int:
        used = self._usage_rw.get(owner_id, 0) + delta
        if used < 0:
            logger.warning("space usage of %s would drop to %d, clamping to 0", owner_id, used)
            used = 0
        self._usage_rw[owner_id] = used
        return used

    def freeze(self) -> VaultSnapshot:
        return VaultSnapshot(
            self._nodes_rw, self._user_grants_rw, self._link_grants_rw, self._usage_rw
        )


class IVaultStore(ABC):
    @abstractmethod
    def snapshot(self) -> VaultSnapshot: ...
    @abstractmethod
    def transaction(self) -> Iterator[VaultState]: ...


class JSONVaultStore(IVaultStore):
    """
    Vault state kept in one JSON document, rewritten atomically per transaction.

    Writers are serialised with a lock; readers get the last published
    snapshot without locking. One store object per file per process.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else settings.VAULT_ROOT / "vault.json"
        self._lock = threading.Lock()
        self._current = self._load()

    def _load(self) -> VaultSnapshot:
        if not self.path.exists():
            return VaultSnapshot.empty()
        with self.path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if data.get("version") != _FORMAT_VERSION:
            raise ConsistencyError(f"unsupported vault format in {self.path}")
        return VaultSnapshot.from_dict(data)

    def _save(self, payload: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix="vault.", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            Path(tmp).replace(self.path)
        finally:
            tmp_path = Path(tmp)
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def _commit(self, payload: Dict[str, Any]) -> None:
        """Write the prepared state. Only this write is retried, never the work that built it."""
        last_error: Optional[OSError] = None
        for attempt in range(1, settings.COMMIT_RETRIES + 1):
            try:
                self._save(payload)
                return
            except OSError as e:
                last_error = e
                logger.warning("vault commit attempt %d/%d failed: %s",
                               attempt, settings.COMMIT_RETRIES, e)
        logger.error("vault commit gave up after %d attempts", settings.COMMIT_RETRIES)
        raise ConsistencyError("could not persist vault state") from last_error

    def snapshot(self) -> VaultSnapshot:
        return self._current

    @contextmanager
    def transaction(self) -> Iterator[VaultState]:
        with self._lock:
            state = self._current.working_copy()
            yield state
            self._commit(state.to_dict())
            self._current = state.freeze()
