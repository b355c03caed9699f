"""
Key Envelope Manager

Every node has one random AES-256 content key that never changes. What the
vault persists is that key in wrapped form:
- under the parent node's key (AES-256-GCM, fresh nonce per wrap), or
- under the owner's public key at a tree root (RSA-OAEP), and
- additionally under each grantee's public key / each link's secret.

Changing where or for whom a node is wrapped only ever replaces a small
wrapped-key blob; node content is never re-encrypted.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

import settings
from errors import IntegrityError, NotFound, PermissionDenied

from .keys import KeyHandle, KeySession
from .primitives import (
    AEAD_ALGO,
    RSA_WRAP_ALGO,
    BytesLike,
    b64d,
    b64e,
    derive_key,
    new_key,
    unwrap_with_private_key,
    wrap_for_public_key,
)


@dataclass(frozen=True)
class WrappedKey:
    """
    A node key in wrapped form, as handed between the envelope manager and
    persistence. `nonce` is None for RSA-OAEP wrapping.
    """
    ciphertext: bytes
    nonce: Optional[bytes]
    algo: str = AEAD_ALGO

    @property
    def is_asymmetric(self) -> bool:
        return self.algo == RSA_WRAP_ALGO

    def encoded(self):
        """(wrapped_key, key_nonce, wrap_algo) as stored in records."""
        return (
            b64e(self.ciphertext),
            b64e(self.nonce) if self.nonce is not None else None,
            self.algo,
        )


@dataclass(frozen=True)
class LinkCredential:
    """What an anonymous link holder presents: the link id, the secret from the URL and maybe a password."""
    link_id: str
    secret: bytes
    password: Optional[str] = None

    def __repr__(self) -> str:
        return f"LinkCredential(link_id={self.link_id!r})"


UnwrappingKey = Union[KeyHandle, BytesLike]


# ============================================================================
# Wrapping
# ============================================================================

def wrap_under(
    node_key: KeyHandle,
    destination_key: Optional[KeyHandle] = None,
    public_key_pem: Optional[bytes] = None,
) -> WrappedKey:
    """
    Wrap `node_key` under a parent key (fresh nonce) or a public key.
    Exactly one of `destination_key` / `public_key_pem` must be given.
    """
    if (destination_key is None) == (public_key_pem is None):
        raise ValueError("wrap under exactly one of a parent key or a public key")
    if destination_key is not None:
        ciphertext, nonce = destination_key.wrap(node_key)
        return WrappedKey(ciphertext=ciphertext, nonce=nonce, algo=AEAD_ALGO)
    return WrappedKey(
        ciphertext=wrap_for_public_key(node_key.material, public_key_pem),
        nonce=None,
        algo=RSA_WRAP_ALGO,
    )


def create_node(
    parent_key: Optional[KeyHandle],
    owner_public_key_pem: Optional[bytes] = None,
) -> Tuple[KeyHandle, WrappedKey]:
    """
    Generate a new node key.

    Args:
        parent_key: Unwrapped key of the parent folder, or None for a tree root
        owner_public_key_pem: Owner's public key, required for a tree root

    Returns:
        (raw key handle for encrypting the node right away, wrapped form to persist)
    """
    if parent_key is None and owner_public_key_pem is None:
        raise ValueError("a root node must be wrapped under its owner's public key")
    node_key = KeyHandle(new_key(), label="node")
    if parent_key is not None:
        return node_key, wrap_under(node_key, destination_key=parent_key)
    return node_key, wrap_under(node_key, public_key_pem=owner_public_key_pem)


def unwrap_for_read(wrapped: WrappedKey, unwrapping_key: UnwrappingKey) -> KeyHandle:
    """
    Recover a node key from one wrapping edge.

    `unwrapping_key` is the parent's key handle (or link wrapping key) for
    AES-GCM wrapping, or a private key PEM for RSA-OAEP wrapping.
    Raises IntegrityError if it is not the key this blob was wrapped under.
    """
    if wrapped.is_asymmetric:
        if isinstance(unwrapping_key, KeyHandle):
            raise IntegrityError("RSA-wrapped key needs a private key")
        return KeyHandle(unwrap_with_private_key(wrapped.ciphertext, unwrapping_key), label="node")
    if not isinstance(unwrapping_key, KeyHandle):
        raise IntegrityError("AES-wrapped key needs a symmetric key")
    if wrapped.nonce is None:
        raise IntegrityError("AES-wrapped key without nonce")
    return unwrapping_key.unwrap(wrapped.ciphertext, wrapped.nonce, label="node")


def verify_node_key(node, node_key: KeyHandle) -> None:
    """
    Prove that `node_key` is the key of `node` by authenticating its
    encrypted name. Raises IntegrityError otherwise.
    """
    node_key.decrypt(b64d(node.encrypted_name), b64d(node.name_nonce))


# ============================================================================
# Links
# ============================================================================

def link_wrapping_key(
    secret: bytes,
    password: Optional[str] = None,
    iterations: Optional[int] = None,
) -> KeyHandle:
    """
    Key a link grant is wrapped under: the secret itself, or
    PBKDF2(password, salt=secret) when the link has a password.
    Raises IntegrityError for a secret that cannot be a link secret.
    """
    if len(secret) != settings.LINK_SECRET_SIZE:
        raise IntegrityError("malformed link secret")
    if password is None:
        return KeyHandle(secret, label="link")
    return KeyHandle(derive_key(password, secret, iterations), label="link")


def open_link_key(grant, credential: LinkCredential) -> KeyHandle:
    """Unwrap a link grant's copy of the node key with the holder's credential."""
    if grant.password_protected and credential.password is None:
        raise PermissionDenied("link requires a password")
    password = credential.password if grant.password_protected else None
    with link_wrapping_key(credential.secret, password, grant.kdf_iterations) as wrapping_key:
        return unwrap_for_read(grant.wrapped(), wrapping_key)


# ============================================================================
# Key path
# ============================================================================

def open_node_key(
    snapshot,
    node_id: str,
    session: KeySession,
    link: Optional[LinkCredential] = None,
    now=None,
) -> KeyHandle:
    """
    Recover a node's key for `session` along the shortest available path.

    Walks from the node towards its root and stops at the first chain node
    the session can open directly: a root it owns, a user grant naming it, or
    the supplied link. From there keys are unwrapped parent to child down to
    the target. The returned handle belongs to the session.
    """
    chain = snapshot.ancestor_chain(node_id)
    if not chain:
        raise NotFound(node_id)

    principal = session.principal_id
    entry: Optional[KeyHandle] = None
    depth = 0
    for depth, node in enumerate(chain):
        if principal is not None:
            if node.parent_id is None and node.owner_id == principal and node.wrapped().is_asymmetric:
                entry = unwrap_for_read(node.wrapped(), session.private_key_pem)
                break
            grant = snapshot.user_grant(node.node_id, principal)
            if grant is not None and not grant.is_expired(now):
                entry = unwrap_for_read(grant.wrapped(), session.private_key_pem)
                break
        if link is not None:
            grant = snapshot.link_grant(link.link_id)
            if grant is not None and grant.node_id == node.node_id and not grant.is_expired(now):
                entry = open_link_key(grant, link)
                break
    if entry is None:
        raise PermissionDenied(node_id)

    key = entry
    for child in reversed(chain[:depth]):
        next_key = unwrap_for_read(child.wrapped(), key)
        key.zero()
        key = next_key
    return session.adopt(key)
