"""
Error taxonomy for the vault core.

Internally every failure keeps its precise type so callers (and cleanup jobs)
can tell an expired grant from a missing node. At the API boundary,
`public_error` folds everything that could reveal whether a node exists into
one generic not-found error.
"""


class VaultError(Exception):
    """Base class for all vault errors."""


class IntegrityError(VaultError):
    """Authenticated decryption failed: wrong key, wrong nonce or tampered data."""


class NonceReuseError(VaultError):
    """A (key, nonce) pair was about to be used for a second encryption."""


class PermissionDenied(VaultError):
    """The resolver did not grant the required access level."""


class NotFound(PermissionDenied):
    """Node, grant or principal does not exist."""


class ExpiredGrant(PermissionDenied):
    """The only grant that would have allowed access is past its expiry."""


class CycleRejected(VaultError):
    """A move would place a node underneath one of its own descendants."""


class ConsistencyError(VaultError):
    """Persisted state changed underneath an operation; retry the whole step."""


class QuotaExceeded(VaultError):
    """The owner does not have enough free space for the new node."""


GENERIC_NOT_FOUND = "File not found"


def public_error(exc: VaultError) -> VaultError:
    """
    Map an internal error to what may be shown outside the core.

    Denials, missing nodes and expired grants all look the same so that a
    caller cannot probe for the existence of nodes it has no access to.
    """
    if isinstance(exc, PermissionDenied):
        return NotFound(GENERIC_NOT_FOUND)
    return exc
