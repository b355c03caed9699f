"""
Authorization Resolver

Access to a node is the join of everything that applies anywhere on its
ancestor chain (target included):
- ownership of the tree        -> OWNER
- an unexpired user grant      -> EDITOR or VIEWER
- the presented link, if its grant sits on the chain, is unexpired, its
  secret is well formed and, when password protected, the presented
  password opens its key
                               -> EDITOR or VIEWER

Permissions flow down the tree, never up, and a grant closer to the target
never narrows a more permissive one further up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional

import settings
from crypto.envelope import LinkCredential, open_link_key
from errors import ExpiredGrant, IntegrityError, NotFound, PermissionDenied

logger = logging.getLogger(__name__)


class Access(IntEnum):
    DENIED = 0
    VIEWER = 1
    EDITOR = 2
    OWNER = 3

    @classmethod
    def for_grant(cls, edit: bool) -> "Access":
        return cls.EDITOR if edit else cls.VIEWER

    def join(self, other: "Access") -> "Access":
        return self if self >= other else other


class Reason(Enum):
    GRANTED = "granted"
    NOT_FOUND = "not_found"
    NO_GRANT = "no_grant"
    EXPIRED = "expired"
    BAD_LINK_PASSWORD = "bad_link_password"


@dataclass(frozen=True)
class Decision:
    access: Access
    reason: Reason
    via: Optional[str] = None  # chain node whose grant or ownership decided it


def explain(
    snapshot,
    principal_id: Optional[str],
    node_id: str,
    link: Optional[LinkCredential] = None,
    now: Optional[datetime] = None,
) -> Decision:
    """Resolve access and keep the internal reason for denials."""
    chain = snapshot.ancestor_chain(node_id)
    if not chain:
        return Decision(Access.DENIED, Reason.NOT_FOUND)

    link_grant = snapshot.link_grant(link.link_id) if link is not None else None
    best = Access.DENIED
    via = None
    saw_expired = False
    bad_password = False

    for node in chain:
        if principal_id is not None and node.owner_id == principal_id:
            return Decision(Access.OWNER, Reason.GRANTED, node.node_id)

        if principal_id is not None:
            grant = snapshot.user_grant(node.node_id, principal_id)
            if grant is not None:
                if grant.is_expired(now):
                    saw_expired = True
                else:
                    best, via = _fold(best, via, Access.for_grant(grant.edit), node.node_id)

        if link_grant is not None and link_grant.node_id == node.node_id:
            if link_grant.is_expired(now):
                saw_expired = True
            elif _link_credential_ok(link_grant, link):
                best, via = _fold(best, via, Access.for_grant(link_grant.edit), node.node_id)
            else:
                bad_password = True

    if best > Access.DENIED:
        return Decision(best, Reason.GRANTED, via)
    if bad_password:
        return Decision(Access.DENIED, Reason.BAD_LINK_PASSWORD)
    if saw_expired:
        return Decision(Access.DENIED, Reason.EXPIRED)
    return Decision(Access.DENIED, Reason.NO_GRANT)


def _fold(best: Access, via: Optional[str], access: Access, node_id: str):
    joined = best.join(access)
    return joined, (via if joined == best else node_id)


def _link_credential_ok(grant, link: LinkCredential) -> bool:
    if len(link.secret) != settings.LINK_SECRET_SIZE:
        return False
    if not grant.password_protected:
        return True
    try:
        key = open_link_key(grant, link)
    except (IntegrityError, PermissionDenied):
        return False
    key.zero()
    return True


def resolve(
    snapshot,
    principal_id: Optional[str],
    node_id: str,
    link: Optional[LinkCredential] = None,
    now: Optional[datetime] = None,
) -> Access:
    """Owner | Editor | Viewer | Denied for a principal (or anonymous link holder) on a node."""
    return explain(snapshot, principal_id, node_id, link, now).access


def require(
    snapshot,
    principal_id: Optional[str],
    node_id: str,
    minimum: Access,
    link: Optional[LinkCredential] = None,
    now: Optional[datetime] = None,
) -> Decision:
    """
    Raise unless the principal has at least `minimum` on the node.

    The exception type keeps the internal reason (NotFound, ExpiredGrant,
    PermissionDenied); `errors.public_error` collapses all of them.
    """
    decision = explain(snapshot, principal_id, node_id, link, now)
    if decision.access >= minimum:
        return decision

    logger.warning(
        "access denied: principal=%s node=%s needed=%s got=%s reason=%s",
        principal_id or "anonymous", node_id, minimum.name, decision.access.name,
        decision.reason.value,
    )
    if decision.reason is Reason.NOT_FOUND:
        raise NotFound(node_id)
    if decision.reason is Reason.EXPIRED:
        raise ExpiredGrant(node_id)
    raise PermissionDenied(node_id)
