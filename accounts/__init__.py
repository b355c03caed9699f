"""Principals: registration, login verification and private key wrapping."""

from .hashing import SimpleHasher
from .manager import AccountManager
from .models import Principal
from .storage import IStorage, JSONStorage

__all__ = [
    "SimpleHasher",
    "AccountManager",
    "Principal",
    "IStorage",
    "JSONStorage",
]
