"""
Key handles and the session-scoped key context.

Unwrapped key material only ever lives inside a `KeyHandle`, and every handle
is owned by a `KeySession`. Closing the session wipes every handle it issued
together with the principal's unwrapped private key.
"""

import hmac
from typing import List, Optional, Set, Tuple

from errors import NonceReuseError

from .primitives import decrypt, encrypt, new_nonce, unwrap, wrap


class KeyHandle:
    """
    Mutable holder for one symmetric key.

    The handle remembers every nonce it has encrypted with and refuses to use
    one twice. `zero()` overwrites the material in place; any later use raises.
    """

    def __init__(self, material: bytes, label: str = "") -> None:
        self._material = bytearray(material)
        self._used_nonces: Set[bytes] = set()
        self._zeroed = False
        self.label = label

    def __repr__(self) -> str:
        state = "zeroed" if self._zeroed else "live"
        return f"<KeyHandle {self.label or '?'} {state}>"

    def __enter__(self) -> "KeyHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.zero()

    @property
    def zeroed(self) -> bool:
        return self._zeroed

    @property
    def material(self) -> bytearray:
        if self._zeroed:
            raise ValueError("key handle has been zeroed")
        return self._material

    def same_key(self, other: "KeyHandle") -> bool:
        return hmac.compare_digest(bytes(self.material), bytes(other.material))

    def _claim_nonce(self, nonce: Optional[bytes]) -> bytes:
        nonce = nonce if nonce is not None else new_nonce()
        if nonce in self._used_nonces:
            raise NonceReuseError("nonce already used with this key")
        self._used_nonces.add(nonce)
        return nonce

    def encrypt(self, plaintext: bytes, nonce: Optional[bytes] = None) -> Tuple[bytes, bytes]:
        """Encrypt under this key with a fresh nonce. Returns (ciphertext, nonce)."""
        nonce = self._claim_nonce(nonce)
        return encrypt(plaintext, self.material, nonce), nonce

    def decrypt(self, ciphertext: bytes, nonce: bytes) -> bytes:
        return decrypt(ciphertext, self.material, nonce)

    def wrap(self, payload: "KeyHandle", nonce: Optional[bytes] = None) -> Tuple[bytes, bytes]:
        """Wrap another key under this one. Returns (wrapped_key, nonce)."""
        nonce = self._claim_nonce(nonce)
        return wrap(payload.material, self.material, nonce), nonce

    def unwrap(self, wrapped_key: bytes, nonce: bytes, label: str = "") -> "KeyHandle":
        return KeyHandle(unwrap(wrapped_key, self.material, nonce), label=label)

    def zero(self) -> None:
        for i in range(len(self._material)):
            self._material[i] = 0
        self._used_nonces.clear()
        self._zeroed = True


class KeySession:
    """
    Request or login scoped owner of unwrapped key material.

    Holds the principal's private key (unwrapped with their password) and all
    node key handles opened on its behalf. Anonymous link holders get a
    session with no principal and no private key.
    """

    def __init__(
        self,
        principal_id: Optional[str],
        private_key_pem: Optional[bytes] = None,
        public_key_pem: Optional[bytes] = None,
    ) -> None:
        self.principal_id = principal_id
        self.public_key_pem = public_key_pem
        self._private_key = bytearray(private_key_pem) if private_key_pem else None
        self._handles: List[KeyHandle] = []
        self._closed = False

    @classmethod
    def anonymous(cls) -> "KeySession":
        return cls(None)

    def __enter__(self) -> "KeySession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_anonymous(self) -> bool:
        return self.principal_id is None

    @property
    def private_key_pem(self) -> bytearray:
        if self._closed:
            raise ValueError("key session is closed")
        if self._private_key is None:
            raise ValueError("anonymous sessions hold no private key")
        return self._private_key

    def adopt(self, handle: KeyHandle) -> KeyHandle:
        """Take ownership of a handle so it is wiped when the session closes."""
        if self._closed:
            raise ValueError("key session is closed")
        self._handles.append(handle)
        return handle

    def new_handle(self, material: bytes, label: str = "") -> KeyHandle:
        return self.adopt(KeyHandle(material, label=label))

    def close(self) -> None:
        for handle in self._handles:
            handle.zero()
        self._handles.clear()
        if self._private_key is not None:
            for i in range(len(self._private_key)):
                self._private_key[i] = 0
            self._private_key = None
        self._closed = True
