from __future__ import annotations

from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import uuid

from crypto.envelope import WrappedKey
from crypto.primitives import RSA_WRAP_ALGO, b64d, b64e


def _now_iso() -> str:
    """Consistent ISO-8601 timestamp (UTC, seconds precision)."""
    return to_iso(datetime.now(timezone.utc))


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(text: str) -> datetime:
    return datetime.fromisoformat(text.replace("Z", "+00:00"))


def _is_expired(expires_at: Optional[str], now: Optional[datetime]) -> bool:
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return parse_iso(expires_at) <= now


@dataclass(frozen=True)
class Node:
    """
    A file or folder.

    Everything that would reveal content is stored encrypted under the node's
    own key, each attribute with its own nonce:
    - `encrypted_name` / `name_nonce`
    - `encrypted_mime` / `mime_nonce` (both None when the type is unknown)
    - blob `content_ref` / `content_nonce` (None for directories)

    The node key itself is stored wrapped: under the parent's key
    (`wrap_algo` aes-256-gcm, `key_nonce` set) or, at a tree root, under the
    owner's public key (rsa-oaep-sha256, `key_nonce` None).
    """

    node_id: str
    owner_id: str
    uploader_id: str
    parent_id: Optional[str]
    is_directory: bool
    wrapped_key: str
    key_nonce: Optional[str]
    wrap_algo: str
    encrypted_name: str
    name_nonce: str
    encrypted_mime: Optional[str]
    mime_nonce: Optional[str]
    content_nonce: Optional[str]
    content_ref: Optional[str]
    size: int
    created_at: str
    modified_at: str

    @staticmethod
    def new(
        owner_id: str,
        uploader_id: str,
        parent_id: Optional[str],
        is_directory: bool,
        wrapped: WrappedKey,
        *,
        encrypted_name: bytes,
        name_nonce: bytes,
        encrypted_mime: Optional[bytes] = None,
        mime_nonce: Optional[bytes] = None,
        content_nonce: Optional[bytes] = None,
        size: int = 0,
        node_id: Optional[str] = None,
    ) -> "Node":
        node_id = node_id or str(uuid.uuid4())
        wrapped_key, key_nonce, wrap_algo = wrapped.encoded()
        now = _now_iso()
        return Node(
            node_id=node_id,
            owner_id=owner_id,
            uploader_id=uploader_id,
            parent_id=parent_id,
            is_directory=is_directory,
            wrapped_key=wrapped_key,
            key_nonce=key_nonce,
            wrap_algo=wrap_algo,
            encrypted_name=b64e(encrypted_name),
            name_nonce=b64e(name_nonce),
            encrypted_mime=b64e(encrypted_mime) if encrypted_mime is not None else None,
            mime_nonce=b64e(mime_nonce) if mime_nonce is not None else None,
            content_nonce=b64e(content_nonce) if content_nonce is not None else None,
            content_ref=None if is_directory else f"{node_id}.bin",
            size=size,
            created_at=now,
            modified_at=now,
        )

    def wrapped(self) -> WrappedKey:
        return WrappedKey(
            ciphertext=b64d(self.wrapped_key),
            nonce=b64d(self.key_nonce) if self.key_nonce is not None else None,
            algo=self.wrap_algo,
        )

    def rewrapped(self, parent_id: Optional[str], wrapped: WrappedKey) -> "Node":
        """Same node, new parent pointer and wrapping. Key and content untouched."""
        wrapped_key, key_nonce, wrap_algo = wrapped.encoded()
        return replace(
            self,
            parent_id=parent_id,
            wrapped_key=wrapped_key,
            key_nonce=key_nonce,
            wrap_algo=wrap_algo,
            modified_at=_now_iso(),
        )

    def renamed(self, encrypted_name: bytes, name_nonce: bytes) -> "Node":
        return replace(
            self,
            encrypted_name=b64e(encrypted_name),
            name_nonce=b64e(name_nonce),
            modified_at=_now_iso(),
        )

    def footprint(self) -> int:
        """Bytes charged against the owner's quota: content plus encrypted metadata."""
        return (
            self.size
            + len(self.wrapped_key)
            + len(self.encrypted_name)
            + len(self.encrypted_mime or "")
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(**data)


@dataclass(frozen=True)
class UserGrant:
    """
    Direct share of a node with a registered principal.
    The node key is wrapped under the grantee's public key (RSA-OAEP).
    """
    node_id: str
    user_id: str
    edit: bool
    wrapped_key: str
    expires_at: Optional[str]
    created_at: str
    modified_at: str

    @staticmethod
    def new(
        node_id: str,
        user_id: str,
        edit: bool,
        wrapped_key: bytes,
        expires_at: Optional[datetime] = None,
    ) -> "UserGrant":
        now = _now_iso()
        return UserGrant(
            node_id=node_id,
            user_id=user_id,
            edit=edit,
            wrapped_key=b64e(wrapped_key),
            expires_at=to_iso(expires_at) if expires_at else None,
            created_at=now,
            modified_at=now,
        )

    @property
    def key(self) -> str:
        return user_grant_key(self.node_id, self.user_id)

    def wrapped(self) -> WrappedKey:
        return WrappedKey(ciphertext=b64d(self.wrapped_key), nonce=None, algo=RSA_WRAP_ALGO)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return _is_expired(self.expires_at, now)

    def with_edit(self, edit: bool) -> "UserGrant":
        return replace(self, edit=edit, modified_at=_now_iso())

    def footprint(self) -> int:
        return len(self.wrapped_key)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserGrant":
        return cls(**data)


@dataclass(frozen=True)
class LinkGrant:
    """
    Anonymous share link.

    The node key is wrapped (AES-256-GCM) under the link secret, which only
    exists in the share URL, or under PBKDF2(password, salt=link secret) when
    `password_protected` is set. The server can therefore neither open the
    key nor check the password on its own.
    """
    link_id: str
    node_id: str
    edit: bool
    wrapped_key: str
    key_nonce: str
    password_protected: bool
    kdf_iterations: Optional[int]
    expires_at: Optional[str]
    created_at: str
    modified_at: str

    @staticmethod
    def new(
        node_id: str,
        edit: bool,
        wrapped: WrappedKey,
        password_protected: bool,
        kdf_iterations: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> "LinkGrant":
        wrapped_key, key_nonce, _ = wrapped.encoded()
        now = _now_iso()
        return LinkGrant(
            link_id=str(uuid.uuid4()),
            node_id=node_id,
            edit=edit,
            wrapped_key=wrapped_key,
            key_nonce=key_nonce,
            password_protected=password_protected,
            kdf_iterations=kdf_iterations if password_protected else None,
            expires_at=to_iso(expires_at) if expires_at else None,
            created_at=now,
            modified_at=now,
        )

    def wrapped(self) -> WrappedKey:
        return WrappedKey(ciphertext=b64d(self.wrapped_key), nonce=b64d(self.key_nonce))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return _is_expired(self.expires_at, now)

    def with_edit(self, edit: bool) -> "LinkGrant":
        return replace(self, edit=edit, modified_at=_now_iso())

    def footprint(self) -> int:
        return len(self.wrapped_key) + len(self.key_nonce)

    def rewrapped(
        self,
        wrapped: WrappedKey,
        password_protected: bool,
        kdf_iterations: Optional[int] = None,
    ) -> "LinkGrant":
        wrapped_key, key_nonce, _ = wrapped.encoded()
        return replace(
            self,
            wrapped_key=wrapped_key,
            key_nonce=key_nonce,
            password_protected=password_protected,
            kdf_iterations=kdf_iterations if password_protected else None,
            modified_at=_now_iso(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinkGrant":
        return cls(**data)


def user_grant_key(node_id: str, user_id: str) -> str:
    return f"{node_id}:{user_id}"
