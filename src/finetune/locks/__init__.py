"""
Snapshot lock management.
"""

from .manager import DEFAULT_LOCK_TTL_SECONDS, LockManager, default_holder_id

__all__ = ["DEFAULT_LOCK_TTL_SECONDS", "LockManager", "default_holder_id"]
