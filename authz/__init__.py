"""Authorization over the ancestor chain."""

from .resolver import Access, Decision, Reason, explain, resolve, require

__all__ = [
    "Access",
    "Decision",
    "Reason",
    "explain",
    "resolve",
    "require",
]
