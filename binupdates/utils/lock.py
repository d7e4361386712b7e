"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import fcntl
import os
import re
from pathlib import Path

from .index import log_message
from .outcome import CycleLocked

DEFAULT_LOCK_DIR = "/run/lock"


class UpdateLock:
    """
    Exclusive, non-blocking lock held for the duration of one update cycle.

    The lock is an flock() on '<lock_dir>/binupdates-<name>.lock'; the kernel
    drops it if the process dies, so stale lock files are harmless.
    """

    def __init__(self, name: str, lock_dir: str = DEFAULT_LOCK_DIR):
        safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", name.strip("/")) or "default"
        self.path = Path(lock_dir) / f"binupdates-{safe_name}.lock"
        self._fd = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise CycleLocked(f"another update cycle holds {self.path}")
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        log_message(f"Acquired update lock {self.path}", "DEBUG")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> 'UpdateLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
