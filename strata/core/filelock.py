"""
strata.core.filelock — Per-organization advisory locks.

Two things need mutual exclusion that spans processes:

  - a consolidation run for one organization must not overlap itself
    (a retried cron job would otherwise double-promote patterns);
  - the governor's optional strict mode serialises
    BUDGET_CHECK -> LOG_USAGE per organization.

Both use a ``.lock`` sidecar created with ``O_CREAT | O_EXCL`` holding
``<pid>:<token>`` of its owner.  A lock is only broken when it is older
than ``stale_after`` *and* its owning process is gone, and only the
owner ever unlinks it.  Waits are always bounded: callers get
``TimeoutError`` (``acquire``) or ``False`` (``try_acquire``), never an
indefinite block.

Usage::

    with OrgLock(lock_dir, "consolidation", org_id, timeout=5.0, stale_after=120):
        ...
"""

from __future__ import annotations

import logging
import os
import re
import sys
import time
import uuid
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

log = logging.getLogger(__name__)

_IS_WINDOWS = sys.platform == "win32"

#: Default age (seconds) before an orphaned lock may be broken.
DEFAULT_STALE_AFTER = 600.0


def _safe_stem(value: str) -> str:
    safe = re.sub(r"[^\w\-]", "_", value.strip())
    safe = re.sub(r"_+", "_", safe).strip("_")
    if not safe:
        raise ValueError(f"{value!r} produces an empty lock name")
    return safe


def _pid_alive(pid: int) -> Optional[bool]:
    """Whether *pid* is running; ``None`` when that cannot be told."""
    if pid <= 0:
        return False
    if pid == os.getpid():
        return True
    if _IS_WINDOWS:
        # os.kill(pid, 0) terminates the process on Windows
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return None
    return True


class FileLock:
    """Advisory lock on ``lock_path``.

    Parameters
    ----------
    lock_path : Path
        The sidecar file whose existence means "held".
    timeout : float
        Maximum seconds to wait (default 5).
    poll : float
        Seconds between retry attempts (default 0.05).
    stale_after : float | None
        Minimum age in seconds before a lock whose owner process is gone
        (or cannot be identified) is broken.  Must exceed the longest
        critical section run under the lock.  Defaults to
        ``DEFAULT_STALE_AFTER``.
    """

    def __init__(
        self,
        lock_path: Path,
        timeout: float = 5.0,
        poll: float = 0.05,
        stale_after: Optional[float] = None,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.timeout = max(0.0, timeout)
        self.poll = poll
        self.stale_after = DEFAULT_STALE_AFTER if stale_after is None else max(0.0, stale_after)
        self.owner = f"{os.getpid()}:{uuid.uuid4().hex}"
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    # -- context manager ----------------------------------------------------

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.release()

    # -- acquire / release --------------------------------------------------

    def try_acquire(self) -> bool:
        """Wait up to *timeout* for the lock; return whether it was taken."""
        if self.held:
            return True
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while True:
            if self._create():
                return True
            if self._break_if_stale():
                continue
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll)

    def acquire(self) -> None:
        """Like ``try_acquire`` but raises ``TimeoutError`` on failure."""
        if not self.try_acquire():
            raise TimeoutError(
                f"Could not acquire lock on {self.lock_path} within {self.timeout}s"
            )

    def release(self) -> None:
        """Release the lock; the file is only removed while it is still ours."""
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        except OSError:
            pass
        self._fd = None
        if self._read_owner() != self.owner:
            log.warning("Lock %s was taken over; leaving it in place", self.lock_path)
            return
        try:
            os.unlink(str(self.lock_path))
        except FileNotFoundError:
            pass

    # -- internals ----------------------------------------------------------

    def _create(self) -> bool:
        try:
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        except PermissionError:
            # Windows reports a contended O_EXCL create this way
            if _IS_WINDOWS:
                return False
            raise
        os.write(fd, self.owner.encode("ascii"))
        self._fd = fd
        return True

    def _read_owner(self) -> Optional[str]:
        try:
            return self.lock_path.read_text(encoding="ascii").strip()
        except (OSError, UnicodeDecodeError):
            return None

    def _owner_alive(self, owner: Optional[str]) -> Optional[bool]:
        if not owner:
            return None
        try:
            pid = int(owner.split(":", 1)[0])
        except ValueError:
            return None
        return _pid_alive(pid)

    def _break_if_stale(self) -> bool:
        try:
            age = time.time() - os.path.getmtime(str(self.lock_path))
        except OSError:
            # holder released between our create and stat
            return True
        if age <= self.stale_after:
            return False
        owner = self._read_owner()
        if self._owner_alive(owner):
            return False
        log.warning("Breaking stale lock (%.1fs old, owner %s): %s", age, owner, self.lock_path)
        try:
            os.unlink(str(self.lock_path))
        except OSError:
            return False
        return True


class OrgLock(FileLock):
    """``FileLock`` at ``<lock_dir>/<purpose>-<organization_id>.lock``."""

    def __init__(
        self,
        lock_dir: Path,
        purpose: str,
        organization_id: str,
        timeout: float = 5.0,
        poll: float = 0.05,
        stale_after: Optional[float] = None,
    ) -> None:
        name = f"{_safe_stem(purpose)}-{_safe_stem(organization_id)}.lock"
        super().__init__(
            Path(lock_dir) / name, timeout=timeout, poll=poll, stale_after=stale_after
        )
        self.organization_id = organization_id
        self.purpose = purpose
