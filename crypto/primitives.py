"""
Primitive Layer

Thin, stateless wrappers over the primitives the vault is built on:
- AES-256-GCM for content, attribute and key wrapping (AEAD)
- RSA-OAEP-SHA256 for wrapping a key to a principal's public key
- PBKDF2-HMAC-SHA256 for password based key derivation

Every authenticated-decryption failure surfaces as `IntegrityError`. Callers
must pass a fresh nonce per encryption; see `crypto.keys.KeyHandle` for the
guard that enforces it.
"""

import base64
import os
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

import settings
from errors import IntegrityError

AEAD_ALGO = "aes-256-gcm"
RSA_WRAP_ALGO = "rsa-oaep-sha256"

BytesLike = Union[bytes, bytearray, memoryview]


# ============================================================================
# Encoding and randomness
# ============================================================================

def b64e(raw: BytesLike) -> str:
    return base64.b64encode(bytes(raw)).decode("ascii")


def b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"))


def new_key() -> bytes:
    """Random AES-256 key."""
    return os.urandom(settings.KEY_SIZE)


def new_nonce() -> bytes:
    """Random 96-bit GCM nonce. One per encryption, never reused."""
    return os.urandom(settings.NONCE_SIZE)


def new_salt() -> bytes:
    return os.urandom(settings.SALT_SIZE)


def new_link_secret() -> bytes:
    return os.urandom(settings.LINK_SECRET_SIZE)


# ============================================================================
# Key derivation
# ============================================================================

def derive_key(
    password: Union[str, bytes],
    salt: bytes,
    iterations: Optional[int] = None,
) -> bytes:
    """
    Derive an AES-256 key from a password with PBKDF2-HMAC-SHA256.

    Args:
        password: The secret (str is UTF-8 encoded)
        salt: At least 16 random bytes, generated once per principal or link
        iterations: PBKDF2 iteration count (defaults to settings.KDF_ITERATIONS)

    Returns:
        32 bytes of key material; same inputs always give the same key
    """
    if len(salt) < settings.SALT_SIZE:
        raise ValueError(f"salt must be at least {settings.SALT_SIZE} bytes")
    if iterations is None:
        iterations = settings.KDF_ITERATIONS
    if iterations < 1:
        raise ValueError("iterations must be positive")
    if isinstance(password, str):
        password = password.encode("utf-8")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=settings.KEY_SIZE,
        salt=bytes(salt),
        iterations=iterations,
    )
    return kdf.derive(password)


# ============================================================================
# AEAD
# ============================================================================

def encrypt(plaintext: BytesLike, key: BytesLike, nonce: bytes) -> bytes:
    """
    Encrypt with AES-256-GCM. Returns ciphertext||tag.

    The caller owns nonce freshness: a (key, nonce) pair must never be used twice.
    """
    if len(key) != settings.KEY_SIZE:
        raise ValueError("AES-256-GCM key must be 32 bytes")
    if len(nonce) != settings.NONCE_SIZE:
        raise ValueError("GCM nonce must be 12 bytes")
    return AESGCM(bytes(key)).encrypt(nonce, bytes(plaintext), None)


def decrypt(ciphertext: bytes, key: BytesLike, nonce: bytes) -> bytes:
    """
    Decrypt AES-256-GCM ciphertext||tag. Raises IntegrityError if authentication fails.
    """
    if len(key) != settings.KEY_SIZE:
        raise ValueError("AES-256-GCM key must be 32 bytes")
    if len(nonce) != settings.NONCE_SIZE:
        raise IntegrityError("malformed nonce")
    try:
        return AESGCM(bytes(key)).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise IntegrityError("authenticated decryption failed") from e


def wrap(payload_key: BytesLike, wrapping_key: BytesLike, nonce: bytes) -> bytes:
    """Wrap a symmetric key under another symmetric key (AES-256-GCM)."""
    if len(payload_key) != settings.KEY_SIZE:
        raise ValueError("only 256-bit keys can be wrapped")
    return encrypt(payload_key, wrapping_key, nonce)


def unwrap(ciphertext: bytes, wrapping_key: BytesLike, nonce: bytes) -> bytes:
    """Inverse of `wrap`. Raises IntegrityError on the wrong key or nonce."""
    key = decrypt(ciphertext, wrapping_key, nonce)
    if len(key) != settings.KEY_SIZE:
        raise IntegrityError("unwrapped key has the wrong length")
    return key


# ============================================================================
# RSA-OAEP
# ============================================================================

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def generate_keypair(key_size: Optional[int] = None) -> Tuple[bytes, bytes]:
    """
    Generate an RSA keypair.

    Returns:
        Tuple of (private_key_pem, public_key_pem), PKCS8 / SubjectPublicKeyInfo
    """
    private_key = rsa.generate_private_key(
        public_exponent=65537, key_size=key_size or settings.RSA_KEY_SIZE
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


def wrap_for_public_key(payload_key: BytesLike, public_key_pem: bytes) -> bytes:
    """
    Wrap (encrypt) a symmetric key with RSA-OAEP using the given PEM public key.
    OAEP is randomized, so no nonce is involved.
    """
    public_key = serialization.load_pem_public_key(public_key_pem)
    return public_key.encrypt(bytes(payload_key), _OAEP)


def unwrap_with_private_key(wrapped_key: bytes, private_key_pem: BytesLike) -> bytes:
    """
    Unwrap (decrypt) a symmetric key with RSA-OAEP using the given PEM private key.
    Raises IntegrityError if the key does not belong to this private key.
    """
    private_key = serialization.load_pem_private_key(bytes(private_key_pem), password=None)
    try:
        key = private_key.decrypt(wrapped_key, _OAEP)
    except ValueError as e:
        raise IntegrityError("RSA-OAEP unwrap failed") from e
    if len(key) != settings.KEY_SIZE:
        raise IntegrityError("unwrapped key has the wrong length")
    return key
