"""Reconcilers for Sei node pools and node groups over an in-memory object store."""

__version__ = "0.1.0"
__all__ = [
    "api",
    "cluster",
    "group_reconciler",
    "group_resources",
    "meta",
    "pool_reconciler",
    "pool_resources",
]