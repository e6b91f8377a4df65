"""Tiered file storage: placement rules, replication, eviction, staging and an admin API."""

__version__ = "0.1.0"

__all__ = [
    "admin",
    "evictor",
    "health",
    "logbuffer",
    "model",
    "replicator",
    "spa",
    "stager",
    "throttle",
    "tier_service",
    "write_guard",
]