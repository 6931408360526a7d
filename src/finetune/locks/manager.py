"""
Time-boxed snapshot locks.

At most one unexpired lock exists per snapshot. Expiry is purely
time-based: every read path treats a lapsed lock as absent, so no sweeper
is needed and a crashed holder blocks others for at most one TTL.
"""

import logging
import socket
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from ..core.types import Lock, LockAcquisition, LockContext
from ..core.utils import utc_now
from ..storage.base import LifecycleStore


logger = logging.getLogger(__name__)


DEFAULT_LOCK_TTL_SECONDS = 600


def default_holder_id() -> str:
    """Identify this process as a lock holder."""
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class LockManager:
    """
    Acquires, releases and overrides snapshot locks.
    
    Example:
        >>> locks = LockManager(store)
        >>> result = locks.acquire(snapshot.snapshot_id, context=LockContext.EXPORT)
        >>> if not result.acquired:
        ...     print(f"Locked until {result.expires_at}")
    """
    
    def __init__(
        self,
        store: LifecycleStore,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        holder_id: Optional[str] = None,
    ):
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self.holder_id = holder_id or default_holder_id()
    
    def acquire(
        self,
        snapshot_id: str,
        context: Union[LockContext, str] = LockContext.EXPORT,
        holder_id: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> LockAcquisition:
        """
        Try to take the lock for a snapshot.
        
        The existence check and the insert are one storage operation, so of
        two concurrent callers exactly one succeeds.
        
        Returns:
            LockAcquisition; when not acquired, ``lock`` is the blocking lock
            and ``expires_at`` tells the caller how long to wait
        """
        lock = Lock.create(
            snapshot_id=snapshot_id,
            holder_id=holder_id or self.holder_id,
            context=LockContext(context),
            now=self.clock(),
            ttl=ttl or self.ttl,
        )
        result = self.store.try_acquire_lock(lock)
        
        if result.acquired:
            logger.info(
                f"Acquired {lock.context.value} lock on snapshot {snapshot_id} "
                f"until {lock.expires_at.isoformat()}",
                extra={"snapshot_id": snapshot_id},
            )
        elif result.lock is None:
            logger.warning(
                f"Snapshot {snapshot_id} lock changed hands while being acquired",
                extra={"snapshot_id": snapshot_id},
            )
        else:
            logger.warning(
                f"Snapshot {snapshot_id} is locked by {result.lock.holder_id} "
                f"({result.lock.context.value}) until {result.expires_at.isoformat()}",
                extra={"snapshot_id": snapshot_id},
            )
        return result
    
    def release(self, snapshot_id: str, holder_id: Optional[str] = None) -> bool:
        """Release a lock held by ``holder_id`` (default: this manager)."""
        released = self.store.delete_lock(snapshot_id, holder_id=holder_id or self.holder_id)
        if released:
            logger.debug(f"Released lock on snapshot {snapshot_id}")
        return released
    
    def override(self, snapshot_id: str) -> bool:
        """
        Delete a snapshot's lock regardless of holder or expiry.
        
        Administrative recovery for stuck jobs; performs no other validation.
        
        Returns:
            True if a lock row existed
        """
        deleted = self.store.delete_lock(snapshot_id)
        if deleted:
            logger.info(f"Lock on snapshot {snapshot_id} overridden", extra={"snapshot_id": snapshot_id})
        else:
            logger.info(f"No lock to override on snapshot {snapshot_id}", extra={"snapshot_id": snapshot_id})
        return deleted
    
    def get_active_lock(self, snapshot_id: str) -> Optional[Lock]:
        """Return the snapshot's lock if it has not expired."""
        lock = self.store.get_lock(snapshot_id)
        if lock is None or lock.is_expired(self.clock()):
            return None
        return lock
    
    def is_locked(self, snapshot_id: str) -> bool:
        return self.get_active_lock(snapshot_id) is not None
    
    def active_export_lock(self, filter_hash: str) -> Optional[Lock]:
        """Unexpired export lock on any snapshot with this filter hash, latest expiry first."""
        locks = self.store.find_active_locks_for_filter_hash(
            filter_hash, self.clock(), context=LockContext.EXPORT
        )
        return locks[0] if locks else None
