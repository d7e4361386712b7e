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

"""
Atomic Binary Swap

The live binary is only ever replaced by a single os.replace() from a
sibling temporary file, so readers see either the old file or the new one.
The previous binary is kept next to the live path as '<name>.previous'
until the caller either commits (service started) or rolls back.
"""

import contextlib
import os
import shutil
import signal
import stat
import tempfile
import threading
from pathlib import Path
from typing import Optional

from .index import log_message
from .outcome import RollbackFailed, SwapFailed

EXECUTABLE_MODE = 0o755


@contextlib.contextmanager
def deferred_signals(signums=(signal.SIGINT, signal.SIGTERM), redeliver=True):
    """
    Hold SIGINT/SIGTERM until the block finishes.

    Yields the list of held signal numbers. With redeliver=False the caller
    owns that list and must pass it to redeliver_signals() later.
    Only the main thread can install signal handlers; elsewhere this is a no-op.
    """
    received = []
    if threading.current_thread() is not threading.main_thread():
        yield received
        return

    previous = {}

    def _hold(signum, frame):
        received.append(signum)

    for signum in signums:
        previous[signum] = signal.signal(signum, _hold)
    try:
        yield received
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        if redeliver:
            redeliver_signals(received)


def redeliver_signals(received) -> None:
    """Raise signals held by deferred_signals() against the current handlers."""
    for signum in received:
        log_message(f"Delivering deferred signal {signum}", "WARNING")
        signal.raise_signal(signum)


def _copy_to_sibling(source: Path, target: Path, mode: int) -> Path:
    """Copy source into a temporary file in target's directory with the given mode."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
            shutil.copyfileobj(src, out)
            out.flush()
            os.fsync(out.fileno())
        os.chmod(tmp_path, mode)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


class BinarySwap:
    """
    Replace a live binary and keep the previous one around for rollback.

    Usage:
        swap = BinarySwap("/usr/local/bin/filebrowser")
        swap.install(downloaded_path)
        ...start the service...
        swap.commit()      # or swap.rollback()
    """

    def __init__(self, binary_path):
        self.binary_path = Path(binary_path)
        self.backup_path = self.binary_path.with_name(self.binary_path.name + ".previous")
        self.has_backup = False

    def _live_mode(self) -> int:
        try:
            return stat.S_IMODE(self.binary_path.stat().st_mode) | 0o111
        except OSError:
            return EXECUTABLE_MODE

    def install(self, artifact) -> None:
        """
        Atomically put artifact in place of the live binary.

        The old binary is hard-linked (or copied) to the backup path first;
        the live path is never missing or partially written.
        """
        artifact = Path(artifact)
        with deferred_signals():
            try:
                self.binary_path.parent.mkdir(parents=True, exist_ok=True)
                self.has_backup = False
                if self.binary_path.exists():
                    self.backup_path.unlink(missing_ok=True)
                    try:
                        os.link(self.binary_path, self.backup_path)
                    except OSError:
                        shutil.copy2(self.binary_path, self.backup_path)
                    self.has_backup = True
                    log_message(f"Kept previous binary at {self.backup_path}")

                staged = _copy_to_sibling(artifact, self.binary_path, self._live_mode())
                os.replace(staged, self.binary_path)
                _fsync_dir(self.binary_path.parent)
            except OSError as e:
                raise SwapFailed(f"failed to replace {self.binary_path}: {e}") from e
        log_message(f"Installed new binary at {self.binary_path}")

    def rollback(self) -> None:
        """Put the previous binary back. Raises RollbackFailed if there is none."""
        if not self.has_backup or not self.backup_path.exists():
            raise RollbackFailed(f"no previous binary to restore for {self.binary_path}")
        with deferred_signals():
            try:
                os.replace(self.backup_path, self.binary_path)
                _fsync_dir(self.binary_path.parent)
            except OSError as e:
                raise RollbackFailed(f"failed to restore {self.binary_path}: {e}") from e
        self.has_backup = False
        log_message(f"Restored previous binary at {self.binary_path}", "WARNING")

    def commit(self) -> None:
        """Drop the retained previous binary once the new one is known good."""
        if self.has_backup:
            try:
                self.backup_path.unlink(missing_ok=True)
            except OSError as e:
                log_message(f"Could not remove {self.backup_path}: {e}", "WARNING")
        self.has_backup = False


def previous_binary_path(binary_path) -> Optional[Path]:
    """Return the leftover '.previous' file for a binary, if one exists."""
    path = Path(binary_path)
    backup = path.with_name(path.name + ".previous")
    return backup if backup.exists() else None
