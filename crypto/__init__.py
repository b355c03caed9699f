"""Cryptography for the zero-knowledge vault: primitives, key handles and key envelopes."""

from .primitives import (
    AEAD_ALGO,
    RSA_WRAP_ALGO,
    derive_key,
    encrypt,
    decrypt,
    wrap,
    unwrap,
    wrap_for_public_key,
    unwrap_with_private_key,
    generate_keypair,
    new_key,
    new_nonce,
    new_salt,
    new_link_secret,
    b64e,
    b64d,
)

from .keys import KeyHandle, KeySession

from .envelope import (
    WrappedKey,
    LinkCredential,
    create_node,
    wrap_under,
    unwrap_for_read,
    verify_node_key,
    link_wrapping_key,
    open_link_key,
    open_node_key,
)

__all__ = [
    # Primitives
    "AEAD_ALGO",
    "RSA_WRAP_ALGO",
    "derive_key",
    "encrypt",
    "decrypt",
    "wrap",
    "unwrap",
    "wrap_for_public_key",
    "unwrap_with_private_key",
    "generate_keypair",
    "new_key",
    "new_nonce",
    "new_salt",
    "new_link_secret",
    "b64e",
    "b64d",
    # Key handles
    "KeyHandle",
    "KeySession",
    # Envelopes
    "WrappedKey",
    "LinkCredential",
    "create_node",
    "wrap_under",
    "unwrap_for_read",
    "verify_node_key",
    "link_wrapping_key",
    "open_link_key",
    "open_node_key",
]
