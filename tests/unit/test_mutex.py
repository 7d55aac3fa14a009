"""
Unit tests for mutex module.
"""

import os
import sys
import time
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logbridge.errors import LockTimeoutError
from logbridge.mutex import FileMutex


class FakeClock:
    """Monotonic clock that advances only when sleep() is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = 0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps += 1
        self.now += seconds


class TestFileMutex:
    """Tests for FileMutex."""

    @pytest.fixture
    def lock_dir(self, tmp_path):
        return tmp_path / ".locks"

    def test_acquire_creates_sentinel(self, lock_dir):
        mutex = FileMutex(lock_dir, "registry")
        mutex.acquire()
        try:
            assert mutex.held
            assert mutex.path == lock_dir / "registry.lock"
            assert mutex.path.exists()
            assert str(os.getpid()) in mutex.path.read_text()
        finally:
            mutex.release()
        assert not mutex.path.exists()
        assert not mutex.held

    def test_context_manager(self, lock_dir):
        mutex = FileMutex(lock_dir, "registry")
        with mutex.hold():
            assert mutex.path.exists()
        assert not mutex.path.exists()

        with FileMutex(lock_dir, "other") as other:
            assert other.held
        assert not other.held

    def test_release_on_exception(self, lock_dir):
        mutex = FileMutex(lock_dir, "registry")
        with pytest.raises(ValueError):
            with mutex.hold():
                raise ValueError("boom")
        assert not mutex.path.exists()

    def test_second_instance_times_out(self, lock_dir):
        clock = FakeClock()
        holder = FileMutex(lock_dir, "registry")
        holder.acquire()
        try:
            waiter = FileMutex(lock_dir, "registry", timeout=0.05, clock=clock, sleep=clock.sleep)
            with pytest.raises(LockTimeoutError) as exc_info:
                waiter.acquire()
            assert exc_info.value.name == "registry"
            assert clock.sleeps >= 5
            assert not waiter.held
            # Holder's sentinel is untouched
            assert holder.path.exists()
        finally:
            holder.release()

    def test_waiter_acquires_after_release(self, lock_dir):
        holder = FileMutex(lock_dir, "registry")
        holder.acquire()

        clock = FakeClock()

        def release_then_sleep(seconds):
            holder.release()
            clock.sleep(seconds)

        waiter = FileMutex(lock_dir, "registry", timeout=1.0, clock=clock, sleep=release_then_sleep)
        waiter.acquire()
        assert waiter.held
        waiter.release()

    def test_stale_sentinel_is_reclaimed(self, lock_dir):
        lock_dir.mkdir(parents=True)
        sentinel = lock_dir / "registry.lock"
        sentinel.write_text("99999 deadtoken\n")
        old = time.time() - 120
        os.utime(sentinel, (old, old))

        clock = FakeClock()
        mutex = FileMutex(lock_dir, "registry", timeout=0.02, stale_after=30.0, clock=clock, sleep=clock.sleep)
        mutex.acquire()
        assert mutex.held
        assert "deadtoken" not in sentinel.read_text()
        mutex.release()

    def test_fresh_sentinel_is_not_reclaimed(self, lock_dir):
        lock_dir.mkdir(parents=True)
        sentinel = lock_dir / "registry.lock"
        sentinel.write_text("99999 livetoken\n")

        clock = FakeClock()
        mutex = FileMutex(lock_dir, "registry", timeout=0.02, stale_after=30.0, clock=clock, sleep=clock.sleep)
        with pytest.raises(LockTimeoutError):
            mutex.acquire()
        assert "livetoken" in sentinel.read_text()

    def test_concurrent_reclaim_keeps_winner_sentinel(self, lock_dir):
        """A waiter that saw the stale sentinel cannot delete the one that replaced it."""
        lock_dir.mkdir(parents=True)
        sentinel = lock_dir / "registry.lock"
        sentinel.write_text("99999 deadtoken\n")
        old = time.time() - 120
        os.utime(sentinel, (old, old))

        winner = FileMutex(lock_dir, "registry", timeout=0, stale_after=30.0)
        loser = FileMutex(lock_dir, "registry", timeout=0, stale_after=30.0)
        measure = loser._sentinel_identity

        def measure_then_lose_race(path):
            identity = measure(path)
            if not winner.held:
                winner.acquire()
            return identity

        loser._sentinel_identity = measure_then_lose_race
        with pytest.raises(LockTimeoutError):
            loser.acquire()

        assert winner.held
        assert winner._token in sentinel.read_text()
        assert sorted(p.name for p in lock_dir.iterdir()) == ["registry.lock"]
        winner.release()
        assert not sentinel.exists()

    def test_release_leaves_foreign_sentinel(self, lock_dir):
        """A sentinel replaced by another owner is not deleted on release."""
        mutex = FileMutex(lock_dir, "registry")
        mutex.acquire()
        mutex.path.write_text("12345 someoneelse\n")
        mutex.release()
        assert mutex.path.exists()

    def test_double_acquire_rejected(self, lock_dir):
        mutex = FileMutex(lock_dir, "registry")
        mutex.acquire()
        try:
            with pytest.raises(RuntimeError):
                mutex.acquire()
        finally:
            mutex.release()

    def test_release_without_acquire_is_noop(self, lock_dir):
        FileMutex(lock_dir, "registry").release()

    def test_independent_names(self, lock_dir):
        a = FileMutex(lock_dir, "master-index")
        b = FileMutex(lock_dir, "active-sessions")
        with a.hold(), b.hold():
            assert a.held and b.held
