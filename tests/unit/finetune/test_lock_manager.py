"""
Unit tests for LockManager.
"""

import logging
from datetime import timedelta

import pytest

from finetune.core.types import LockContext
from finetune.locks.manager import DEFAULT_LOCK_TTL_SECONDS, LockManager, default_holder_id

from fakes import START, make_snapshot


@pytest.fixture
def locks(store, clock):
    return LockManager(store, clock=clock, holder_id="worker-1")


class TestAcquire:
    """Tests for LockManager.acquire."""
    
    def test_acquire_sets_ttl(self, locks):
        result = locks.acquire("snap-1")
        
        assert result.acquired is True
        assert result.lock.holder_id == "worker-1"
        assert result.lock.context == LockContext.EXPORT
        assert result.expires_at == START + timedelta(seconds=DEFAULT_LOCK_TTL_SECONDS)
    
    def test_second_holder_blocked_until_expiry(self, locks, clock):
        """A blocked caller learns when the lock expires."""
        locks.acquire("snap-1")
        clock.advance(minutes=5)
        
        blocked = locks.acquire("snap-1", context="manual", holder_id="worker-2")
        
        assert blocked.acquired is False
        assert blocked.lock.holder_id == "worker-1"
        assert blocked.lock.remaining_seconds(clock()) == 300
    
    def test_lock_lapses_after_ttl(self, locks, clock):
        """No explicit release is needed once the TTL has passed."""
        locks.acquire("snap-1")
        clock.advance(seconds=DEFAULT_LOCK_TTL_SECONDS)
        
        assert locks.is_locked("snap-1") is False
        assert locks.acquire("snap-1", holder_id="worker-2").acquired is True
    
    def test_custom_ttl(self, store, clock):
        locks = LockManager(store, ttl_seconds=30, clock=clock, holder_id="worker-1")
        
        result = locks.acquire("snap-1", context=LockContext.WEBHOOK)
        
        assert result.expires_at == START + timedelta(seconds=30)
        assert result.lock.context == LockContext.WEBHOOK
    
    def test_blocked_acquire_logs_warning(self, locks, caplog):
        locks.acquire("snap-1")
        
        with caplog.at_level(logging.WARNING, logger="finetune.locks.manager"):
            locks.acquire("snap-1", holder_id="worker-2")
        
        assert "is locked by worker-1" in caplog.text
    
    def test_invalid_context(self, locks):
        with pytest.raises(ValueError):
            locks.acquire("snap-1", context="nightly")


class TestReleaseAndOverride:
    """Tests for release and override."""
    
    def test_release_only_own_lock(self, locks, store, clock):
        other = LockManager(store, clock=clock, holder_id="worker-2")
        locks.acquire("snap-1")
        
        assert other.release("snap-1") is False
        assert locks.is_locked("snap-1") is True
        assert locks.release("snap-1") is True
        assert locks.is_locked("snap-1") is False
    
    def test_override_ignores_holder(self, locks, store, clock):
        """Override removes any lock, regardless of who holds it."""
        LockManager(store, clock=clock, holder_id="worker-2").acquire("snap-1")
        
        assert locks.override("snap-1") is True
        assert locks.get_active_lock("snap-1") is None
    
    def test_override_without_lock(self, locks):
        assert locks.override("snap-1") is False


class TestActiveExportLock:
    """Tests for filter-hash lock lookups."""
    
    def test_finds_export_lock_by_filter_hash(self, locks, store, clock):
        snapshot = make_snapshot()
        store.insert_snapshot(snapshot)
        locks.acquire(snapshot.snapshot_id, context=LockContext.EXPORT)
        
        lock = locks.active_export_lock(snapshot.filter_hash)
        
        assert lock.snapshot_id == snapshot.snapshot_id
        
        clock.advance(seconds=DEFAULT_LOCK_TTL_SECONDS + 1)
        assert locks.active_export_lock(snapshot.filter_hash) is None
    
    def test_retry_locks_do_not_count(self, locks, store):
        snapshot = make_snapshot()
        store.insert_snapshot(snapshot)
        locks.acquire(snapshot.snapshot_id, context=LockContext.MANUAL)
        
        assert locks.active_export_lock(snapshot.filter_hash) is None


def test_default_holder_ids_are_unique():
    assert default_holder_id() != default_holder_id()
