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
Update Orchestrator

Runs one update cycle for one binary:

    discover -> probe -> download -> validate -> stop -> swap -> start -> probe -> notify

Every stage catches its own errors and turns them into a failed
UpdateOutcome; nothing is raised to the caller. Until the swap, a failure
leaves the live binary and the service exactly as they were. After the swap,
a failed start restores the previous binary and starts it again.

Usage:
    from binupdates.utils.orchestrator import UpdateConfig, run_update_cycle

    outcome = run_update_cycle(UpdateConfig(
        binary_path="/usr/local/bin/filebrowser",
        service_name="filebrowser",
        release_source=StaticReleaseSource(url),
    ))
    sys.exit(outcome.exit_code)
"""

import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .binary_swap import BinarySwap, deferred_signals, previous_binary_path, redeliver_signals
from .downloader import download_artifact, validate_artifact
from .index import file_sha256, log_message, parse_version_output, versions_equal
from .lock import DEFAULT_LOCK_DIR, UpdateLock
from .outcome import (
    DownloadFailed,
    InstallationState,
    ReleaseDescriptor,
    RollbackFailed,
    ServiceStartFailed,
    ServiceStopFailed,
    SourceUnavailable,
    SwapFailed,
    UpdateError,
    UpdateOutcome,
    ValidationFailed,
    SEVERITY_CRITICAL,
    SEVERITY_ERROR,
    STATUS_NO_UPDATE,
)
from .service_manager import (
    NullServiceManager,
    SystemctlServiceManager,
    STATUS_RUNNING,
    STATUS_STOPPED,
)

STAGE_ERRORS = {
    "discover": SourceUnavailable,
    "download": DownloadFailed,
    "validate": ValidationFailed,
    "stop": ServiceStopFailed,
    "swap": SwapFailed,
    "restart": ServiceStartFailed,
}

_LOG_LEVELS = {
    SEVERITY_ERROR: "ERROR",
    SEVERITY_CRITICAL: "CRITICAL",
}


@dataclass
class UpdateConfig:
    """Everything one update cycle needs. No module-level state is consulted."""
    binary_path: Path
    release_source: Any
    service_name: Optional[str] = None
    notifier: Optional[Any] = None
    service_manager: Optional[Any] = None
    name: Optional[str] = None
    version_args: List[str] = field(default_factory=lambda: ["--version"])
    version_pattern: Optional[str] = None
    download_timeout: float = 300
    probe_timeout: float = 10
    service_timeout: float = 60
    start_settle_seconds: float = 2.0
    notify_on_noop: bool = False
    lock_dir: Optional[str] = DEFAULT_LOCK_DIR
    download_dir: Optional[str] = None
    min_artifact_size: int = 1
    http_session: Optional[requests.Session] = None

    def __post_init__(self):
        self.binary_path = Path(self.binary_path)
        if not self.name:
            self.name = self.service_name or self.binary_path.name
        if self.service_manager is None:
            if self.service_name:
                self.service_manager = SystemctlServiceManager(timeout=self.service_timeout)
            else:
                self.service_manager = NullServiceManager()


def probe_version(binary_path, version_args: Optional[List[str]] = None,
                  pattern: Optional[str] = None, timeout: float = 10) -> Optional[str]:
    """
    Ask the installed binary for its version.

    Returns:
        str: Version token, or None if the binary is missing, not executable,
        fails, times out, or prints nothing usable
    """
    binary_path = Path(binary_path)
    if not binary_path.is_file():
        log_message(f"Binary not found at {binary_path}", "DEBUG")
        return None
    if not os.access(binary_path, os.X_OK):
        log_message(f"Binary not executable at {binary_path}", "DEBUG")
        return None

    args = list(version_args) if version_args is not None else ["--version"]
    try:
        result = subprocess.run([str(binary_path)] + args, capture_output=True,
                                text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        log_message(f"Version probe of {binary_path} timed out", "WARNING")
        return None
    except OSError as e:
        log_message(f"Version probe of {binary_path} failed: {e}", "WARNING")
        return None

    if result.returncode != 0:
        log_message(f"Version probe of {binary_path} exited with {result.returncode}", "DEBUG")
        return None
    return parse_version_output(result.stdout, pattern)


class UpdateOrchestrator:
    """Coordinates one update attempt end-to-end for a single binary."""

    def __init__(self, config: UpdateConfig):
        self.config = config
        self.name = config.name
        self.services = config.service_manager
        self.state = InstallationState(config.binary_path, config.service_name)
        self._held_signals = []

    def _fail(self, stage: str, exc: Exception, old_version: Optional[str] = None) -> UpdateOutcome:
        if not isinstance(exc, UpdateError):
            exc = STAGE_ERRORS.get(stage, UpdateError)(f"{type(exc).__name__}: {exc}")
        return UpdateOutcome.from_error(exc, stage=stage, old_version=old_version)

    def _probe(self) -> Optional[str]:
        return probe_version(self.config.binary_path, self.config.version_args,
                             self.config.version_pattern, self.config.probe_timeout)

    def _discover(self) -> ReleaseDescriptor:
        release = self.config.release_source.get_latest_release()
        if not isinstance(release, ReleaseDescriptor):
            raise SourceUnavailable(f"release source returned {type(release).__name__}, not a release")
        release.validate()
        return release

    def _start_and_confirm(self) -> None:
        service = self.config.service_name
        if not service:
            return
        self.services.start(service)
        if self.config.start_settle_seconds > 0:
            time.sleep(self.config.start_settle_seconds)
        status = self.services.status(service)
        if status != STATUS_RUNNING:
            raise ServiceStartFailed(f"{service} is {status} after start")

    def check(self) -> Dict[str, Any]:
        """Report whether an update is available without downloading anything."""
        current = self._probe()
        try:
            release = self._discover()
        except Exception as e:
            outcome = self._fail("discover", e, old_version=current)
            return {"success": False, "error": outcome.reason, "current_version": current}

        if release.version is None or current is None:
            update_available = None
        else:
            update_available = not versions_equal(release.version, current)
        return {
            "success": True,
            "current_version": current,
            "latest_version": release.version,
            "update_available": update_available,
            "artifact_url": release.artifact_url,
        }

    def run(self) -> UpdateOutcome:
        """
        Run one cycle under the single-instance lock, then notify exactly once.

        SIGINT/SIGTERM received between stopping the service and confirming
        it runs again are held and re-raised only after the notification.
        """
        log_message(f"Starting update cycle for {self.name}")
        self._held_signals = []
        lock = UpdateLock(self.name, self.config.lock_dir) if self.config.lock_dir else None
        try:
            if lock:
                lock.acquire()
        except Exception as e:
            # CycleLocked is contention; other errors (e.g. PermissionError) stay UpdateError
            outcome = self._fail("lock", e)
        else:
            try:
                outcome = self._run_cycle()
            except Exception as e:
                log_message(f"[{self.name}] Unexpected error during update cycle: {e}", "ERROR")
                outcome = self._fail("cycle", e)
            finally:
                if lock:
                    lock.release()

        log_message(outcome.describe(self.name), _LOG_LEVELS.get(outcome.severity, "INFO"))
        self._notify(outcome)
        redeliver_signals(self._held_signals)
        return outcome

    def _run_cycle(self) -> UpdateOutcome:
        config = self.config

        log_message(f"[{self.name}] Discovering latest release...")
        try:
            release = self._discover()
        except Exception as e:
            return self._fail("discover", e)

        current = self._probe()
        self.state.current_version = current
        if current is None:
            log_message(f"[{self.name}] Installed version unknown, treating as first install/recovery", "WARNING")
        else:
            log_message(f"[{self.name}] Installed version: {current}")

        if versions_equal(release.version, current):
            log_message(f"[{self.name}] Already at latest version {current}")
            return UpdateOutcome.no_update_needed(current)

        log_message(f"[{self.name}] Update candidate: {current or 'unknown'} -> {release.version or 'unversioned build'}")
        try:
            artifact = download_artifact(release.artifact_url, dest_dir=config.download_dir,
                                         timeout=config.download_timeout,
                                         session=config.http_session)
        except Exception as e:
            return self._fail("download", e, old_version=current)

        try:
            return self._install(release, artifact, current)
        finally:
            artifact.unlink(missing_ok=True)

    def _install(self, release: ReleaseDescriptor, artifact: Path,
                 current: Optional[str]) -> UpdateOutcome:
        config = self.config

        try:
            digest = validate_artifact(artifact, config.min_artifact_size, release.sha256)
        except Exception as e:
            return self._fail("validate", e, old_version=current)

        live_digest = file_sha256(config.binary_path) if config.binary_path.exists() else ""
        if live_digest and live_digest == digest:
            log_message(f"[{self.name}] Downloaded build is identical to the installed binary")
            return UpdateOutcome.no_update_needed(current)

        stale = previous_binary_path(config.binary_path)
        if stale:
            log_message(f"[{self.name}] Found {stale} from an interrupted cycle, it will be replaced", "WARNING")

        held = []
        try:
            with deferred_signals(redeliver=False) as held:
                return self._replace(artifact, digest, live_digest, current)
        finally:
            self._held_signals.extend(held)

    def _replace(self, artifact: Path, digest: str, live_digest: str,
                 current: Optional[str]) -> UpdateOutcome:
        """Stop, swap, start (or roll back) and commit. Runs with signals held."""
        config = self.config
        service = config.service_name

        was_running = True
        if service:
            try:
                was_running = self.services.status(service) != STATUS_STOPPED
                if was_running:
                    log_message(f"[{self.name}] Stopping service {service}...")
                    self.services.stop(service)
                else:
                    log_message(f"[{self.name}] Service {service} is not running, skipping stop")
            except Exception as e:
                return self._fail("stop", e, old_version=current)

        swap = BinarySwap(config.binary_path)
        try:
            swap.install(artifact)
        except Exception as e:
            swap.commit()
            outcome = self._fail("swap", e, old_version=current)
            if service and was_running:
                try:
                    self._start_and_confirm()
                except Exception as start_error:
                    return UpdateOutcome.failed(
                        "swap", f"{outcome.reason}; restarting the untouched service failed: {start_error}",
                        RollbackFailed.__name__, old_version=current)
            return outcome

        try:
            self._start_and_confirm()
        except Exception as start_error:
            log_message(f"[{self.name}] Service failed to start on new binary: {start_error}", "ERROR")
            log_message(f"[{self.name}] Rolling back to previous binary...", "WARNING")
            try:
                swap.rollback()
                self._start_and_confirm()
            except Exception as rollback_error:
                return UpdateOutcome.failed(
                    "restart", f"start failed: {start_error}; rollback failed: {rollback_error}",
                    RollbackFailed.__name__, old_version=current)
            return UpdateOutcome.failed(
                "restart", f"start failed: {start_error}; previous binary restored and running",
                ServiceStartFailed.__name__, old_version=current)
        swap.commit()

        new_version = self._probe()
        self.state.current_version = new_version
        if versions_equal(current, new_version):
            return UpdateOutcome.no_update_needed(new_version)
        if current is None and new_version is None:
            old_label = f"sha256:{live_digest[:12]}" if live_digest else None
            return UpdateOutcome.updated(old_label, f"sha256:{digest[:12]}")
        return UpdateOutcome.updated(current, new_version)

    def _notify(self, outcome: UpdateOutcome) -> None:
        notifier = self.config.notifier
        if notifier is None:
            return
        if outcome.status == STATUS_NO_UPDATE and not self.config.notify_on_noop:
            log_message(f"[{self.name}] Skipping no-op notification", "DEBUG")
            return
        try:
            notifier.notify(outcome.describe(self.name), outcome.severity)
        except Exception as e:
            log_message(f"[{self.name}] Notification failed (outcome unchanged): {e}", "WARNING")


def run_update_cycle(config: UpdateConfig) -> UpdateOutcome:
    """Run one update cycle and return its outcome. Never raises."""
    return UpdateOrchestrator(config).run()
