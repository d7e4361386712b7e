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

import subprocess
from typing import List

from .index import log_message
from .outcome import ServiceStartFailed, ServiceStopFailed

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
STATUS_ERROR = "error"


class SystemctlServiceManager:
    """Stop, start and query systemd units through systemctl."""

    def __init__(self, timeout: float = 60, systemctl: str = "systemctl"):
        self.timeout = timeout
        self.systemctl = systemctl

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run([self.systemctl] + args, capture_output=True,
                              text=True, timeout=self.timeout)

    def stop(self, service: str) -> None:
        try:
            result = self._run(["stop", service])
        except subprocess.TimeoutExpired:
            raise ServiceStopFailed(f"systemctl stop {service} timed out after {self.timeout}s")
        except OSError as e:
            raise ServiceStopFailed(f"systemctl stop {service} error: {e}") from e
        if result.returncode != 0:
            raise ServiceStopFailed(f"systemctl stop {service} failed: {result.stderr.strip()}")
        log_message(f"Stopped service {service}")

    def start(self, service: str) -> None:
        try:
            result = self._run(["start", service])
        except subprocess.TimeoutExpired:
            raise ServiceStartFailed(f"systemctl start {service} timed out after {self.timeout}s")
        except OSError as e:
            raise ServiceStartFailed(f"systemctl start {service} error: {e}") from e
        if result.returncode != 0:
            raise ServiceStartFailed(f"systemctl start {service} failed: {result.stderr.strip()}")
        log_message(f"Started service {service}")

    def status(self, service: str) -> str:
        """Return 'running', 'stopped' or 'error'."""
        try:
            result = self._run(["is-active", service])
        except (subprocess.TimeoutExpired, OSError) as e:
            log_message(f"systemctl is-active {service} error: {e}", "WARNING")
            return STATUS_ERROR
        state = result.stdout.strip()
        if result.returncode == 0 and state == "active":
            return STATUS_RUNNING
        if state in ("inactive", "failed", "deactivating", "activating", "unknown"):
            return STATUS_STOPPED
        return STATUS_ERROR


class NullServiceManager:
    """Used for binaries that are not long-running services. Every call succeeds."""

    def stop(self, service: str) -> None:
        return None

    def start(self, service: str) -> None:
        return None

    def status(self, service: str) -> str:
        return STATUS_RUNNING
