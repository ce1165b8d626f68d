"""Repositories package for cluster state access."""

from .index import PolicyIndex
from .store import ResourceStore, format_label_selector

__all__ = [
    "PolicyIndex",
    "ResourceStore",
    "format_label_selector",
]
