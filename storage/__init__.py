"""Storage module for the encrypted node tree."""

from .models import Node, UserGrant, LinkGrant
from .store import IVaultStore, JSONVaultStore, VaultSnapshot, VaultState
from .blobs import BlobStore

__all__ = [
    "Node",
    "UserGrant",
    "LinkGrant",
    "IVaultStore",
    "JSONVaultStore",
    "VaultSnapshot",
    "VaultState",
    "BlobStore",
]
