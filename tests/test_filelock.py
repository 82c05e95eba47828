"""Tests for strata.core.filelock."""

import os
import threading
import time

import pytest

from strata.core.filelock import FileLock, OrgLock, _pid_alive


def _age(path, seconds):
    old = time.time() - seconds
    os.utime(path, (old, old))


class TestFileLock:
    def test_acquire_release(self, tmp_path):
        lock = FileLock(tmp_path / "a.lock")
        with lock:
            assert lock.held
            assert (tmp_path / "a.lock").exists()
        assert not lock.held
        assert not (tmp_path / "a.lock").exists()

    def test_contended_try_acquire(self, tmp_path):
        first = FileLock(tmp_path / "a.lock", stale_after=60)
        second = FileLock(tmp_path / "a.lock", timeout=0.1, stale_after=60)
        assert first.try_acquire()
        started = time.monotonic()
        assert not second.try_acquire()
        assert time.monotonic() - started >= 0.1
        first.release()
        assert second.try_acquire()
        second.release()

    def test_acquire_timeout_raises(self, tmp_path):
        holder = FileLock(tmp_path / "a.lock", stale_after=60)
        holder.acquire()
        try:
            with pytest.raises(TimeoutError):
                FileLock(tmp_path / "a.lock", timeout=0.05, stale_after=60).acquire()
        finally:
            holder.release()

    def test_stale_lock_is_broken(self, tmp_path):
        path = tmp_path / "a.lock"
        path.write_text("0:gone")
        _age(path, 3600)
        lock = FileLock(path, timeout=0.1, stale_after=10)
        assert lock.try_acquire()
        lock.release()

    def test_unreadable_owner_broken_by_age(self, tmp_path):
        path = tmp_path / "a.lock"
        path.write_text("garbage")
        _age(path, 3600)
        lock = FileLock(path, timeout=0.1, stale_after=10)
        assert lock.try_acquire()
        lock.release()

    def test_old_lock_with_live_owner_is_kept(self, tmp_path):
        holder = FileLock(tmp_path / "a.lock", stale_after=0)
        assert holder.try_acquire()
        _age(holder.lock_path, 3600)
        contender = FileLock(tmp_path / "a.lock", timeout=0.1, stale_after=0)
        assert not contender.try_acquire()
        holder.release()
        assert not holder.lock_path.exists()

    def test_release_leaves_foreign_lock(self, tmp_path):
        holder = FileLock(tmp_path / "a.lock")
        holder.acquire()
        holder.lock_path.write_text("0:someone-else")
        holder.release()
        assert not holder.held
        assert holder.lock_path.read_text() == "0:someone-else"

    def test_owner_written_to_file(self, tmp_path):
        with FileLock(tmp_path / "a.lock") as lock:
            assert lock.lock_path.read_text() == lock.owner
            assert lock.owner.startswith(f"{os.getpid()}:")

    def test_pid_alive(self):
        assert _pid_alive(os.getpid())
        assert _pid_alive(0) is False

    def test_release_is_idempotent(self, tmp_path):
        lock = FileLock(tmp_path / "a.lock")
        lock.release()
        lock.acquire()
        lock.release()
        lock.release()

    def test_waiter_gets_lock_after_release(self, tmp_path):
        holder = FileLock(tmp_path / "a.lock", stale_after=60)
        holder.acquire()
        timer = threading.Timer(0.1, holder.release)
        timer.start()
        try:
            waiter = FileLock(tmp_path / "a.lock", timeout=2.0, stale_after=60)
            assert waiter.try_acquire()
            waiter.release()
        finally:
            timer.cancel()


class TestOrgLock:
    def test_path(self, tmp_path):
        lock = OrgLock(tmp_path, "consolidation", "org/1 acme")
        assert lock.lock_path == tmp_path / "consolidation-org_1_acme.lock"

    def test_orgs_are_independent(self, tmp_path):
        a = OrgLock(tmp_path, "budget", "org-1")
        b = OrgLock(tmp_path, "budget", "org-2", timeout=0)
        assert a.try_acquire()
        assert b.try_acquire()
        a.release()
        b.release()

    def test_empty_name_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            OrgLock(tmp_path, "budget", "///")

    def test_long_holder_keeps_lock(self, tmp_path):
        first = OrgLock(tmp_path, "budget", "org-1", timeout=0.2)
        assert first.try_acquire()
        _age(first.lock_path, 5)
        second = OrgLock(tmp_path, "budget", "org-1", timeout=0.1)
        assert not second.try_acquire()
        first.release()
        assert second.try_acquire()
        assert second.lock_path.exists()
        second.release()
