"""
Exclusive vault lock.

Short-lived processes (interactive commands and background learn calls)
coordinate only through this lock. Acquisition polls a non-blocking flock
until a bounded timeout, then raises VaultBusyError so callers may retry.
"""

import fcntl
import os
import time
from pathlib import Path
from typing import Optional, Union

from loguru import logger

from ..core.error_codes import VaultBusyError


class VaultLock:
    """Exclusive advisory lock scoped to one vault directory."""

    def __init__(
        self,
        lock_path: Union[str, Path],
        timeout: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            raise RuntimeError("VaultLock is not reentrant")

        self.lock_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        deadline = time.monotonic() + self.timeout
        waited = False

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    logger.warning("Vault lock timeout", timeout_seconds=self.timeout)
                    raise VaultBusyError(
                        f"Vault is busy: lock not acquired within {self.timeout}s",
                        timeout_seconds=self.timeout,
                    )
                waited = True
                time.sleep(self.poll_interval)

        if waited:
            logger.debug("Vault lock acquired after waiting")
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
