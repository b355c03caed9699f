"""Sharing nodes with principals and through anonymous links."""

from .grants import (
    UNSET,
    GrantRef,
    LinkShare,
    grant_to_user,
    grant_link,
    revoke,
    update_grant,
    list_grants,
    shared_with_me,
    purge_expired,
)

__all__ = [
    "UNSET",
    "GrantRef",
    "LinkShare",
    "grant_to_user",
    "grant_link",
    "revoke",
    "update_grant",
    "list_grants",
    "shared_with_me",
    "purge_expired",
]
