"""
Tests for the exclusive vault lock.
"""

import time

import pytest

from src.core.error_codes import VaultBusyError
from src.storage.locking import VaultLock


@pytest.fixture
def lock_path(temp_dir):
    return temp_dir / "vault" / "vault.lock"


class TestVaultLock:
    """Tests for VaultLock."""

    def test_acquire_and_release(self, lock_path):
        """Test the basic lifecycle."""
        lock = VaultLock(lock_path, timeout=0.2, poll_interval=0.01)

        lock.acquire()
        assert lock.held
        assert lock_path.exists()

        lock.release()
        assert not lock.held

    def test_context_manager(self, lock_path):
        """Test use as a context manager."""
        with VaultLock(lock_path, timeout=0.2) as lock:
            assert lock.held
        assert not lock.held

    def test_contention_times_out(self, lock_path):
        """Test that a second holder gets VaultBusyError after the timeout."""
        holder = VaultLock(lock_path, timeout=0.2, poll_interval=0.01)
        contender = VaultLock(lock_path, timeout=0.1, poll_interval=0.01)

        with holder:
            started = time.monotonic()
            with pytest.raises(VaultBusyError) as exc_info:
                contender.acquire()
            elapsed = time.monotonic() - started

        assert exc_info.value.timeout_seconds == 0.1
        assert elapsed >= 0.1
        assert not contender.held

    def test_available_after_release(self, lock_path):
        """Test that the lock can be taken once the holder releases it."""
        first = VaultLock(lock_path, timeout=0.1, poll_interval=0.01)
        second = VaultLock(lock_path, timeout=0.1, poll_interval=0.01)

        with first:
            pass
        with second:
            assert second.held

    def test_released_on_exception(self, lock_path):
        """Test that the lock is released on every exit path."""
        lock = VaultLock(lock_path, timeout=0.1)

        with pytest.raises(RuntimeError):
            with lock:
                raise RuntimeError("boom")

        assert not lock.held
        with VaultLock(lock_path, timeout=0.1):
            pass

    def test_not_reentrant(self, lock_path):
        """Test that acquiring twice on one instance is a programming error."""
        lock = VaultLock(lock_path, timeout=0.1)

        with lock:
            with pytest.raises(RuntimeError):
                lock.acquire()

    def test_release_without_acquire(self, lock_path):
        """Test that releasing an unheld lock is a no-op."""
        VaultLock(lock_path).release()
