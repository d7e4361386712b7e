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
Update Outcomes and Errors

Data types shared by the orchestrator, the release sources, the service
managers and the notifiers:

- ReleaseDescriptor: what the release source says is the latest build
- InstallationState: what is installed right now
- UpdateOutcome: the terminal result of one update cycle
- UpdateError and its subclasses: one per stage that can fail
"""

from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

# Exit codes reported by the entry point
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLBACK_FAILED = 3

# Notification severities
SEVERITY_INFO = "info"
SEVERITY_ERROR = "error"
SEVERITY_CRITICAL = "critical"

STATUS_NO_UPDATE = "no_update_needed"
STATUS_UPDATED = "updated"
STATUS_FAILED = "failed"


class UpdateError(Exception):
    """Base class for every failure inside an update cycle."""
    stage = "unknown"


class SourceUnavailable(UpdateError):
    """The release source could not be queried or returned malformed data."""
    stage = "discover"


class DownloadFailed(UpdateError):
    """The artifact transfer failed, returned a non-success status, or was empty."""
    stage = "download"


class ValidationFailed(UpdateError):
    """The downloaded artifact did not pass the integrity gate."""
    stage = "validate"


class ServiceStopFailed(UpdateError):
    stage = "stop"


class SwapFailed(UpdateError):
    """The live binary could not be replaced."""
    stage = "swap"


class ServiceStartFailed(UpdateError):
    stage = "restart"


class RollbackFailed(UpdateError):
    """The previous binary could not be restored and started. Needs an operator."""
    stage = "restart"


class CycleLocked(UpdateError):
    """Another update cycle already holds the lock for this binary."""
    stage = "lock"


class NotificationFailed(UpdateError):
    stage = "notify"


@dataclass
class ReleaseDescriptor:
    """Latest build as reported by a release source."""
    artifact_url: str
    version: Optional[str] = None
    sha256: Optional[str] = None

    def validate(self) -> None:
        """Raise SourceUnavailable if the descriptor cannot be acted on."""
        if not isinstance(self.artifact_url, str) or not self.artifact_url.strip():
            raise SourceUnavailable("release source returned an empty artifact URL")
        if not self.artifact_url.strip().lower().startswith(("http://", "https://")):
            raise SourceUnavailable(f"unsupported artifact URL: {self.artifact_url}")


@dataclass
class InstallationState:
    """What is installed on the host right now."""
    binary_path: Path
    service_name: Optional[str] = None
    current_version: Optional[str] = None


@dataclass
class UpdateOutcome:
    """
    Terminal result of one update cycle.

    Exactly one of three shapes:
    - status == "no_update_needed": old_version/new_version describe the installed build
    - status == "updated": old_version -> new_version
    - status == "failed": stage, reason and error (the UpdateError class name)
    """
    status: str
    old_version: Optional[str] = None
    new_version: Optional[str] = None
    stage: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def no_update_needed(cls, version: Optional[str] = None) -> 'UpdateOutcome':
        return cls(status=STATUS_NO_UPDATE, old_version=version, new_version=version)

    @classmethod
    def updated(cls, old: Optional[str], new: Optional[str]) -> 'UpdateOutcome':
        return cls(status=STATUS_UPDATED, old_version=old, new_version=new)

    @classmethod
    def failed(cls, stage: str, reason: str, error: Optional[str] = None,
               old_version: Optional[str] = None) -> 'UpdateOutcome':
        return cls(status=STATUS_FAILED, stage=stage, reason=reason,
                   error=error, old_version=old_version)

    @classmethod
    def from_error(cls, exc: Exception, stage: Optional[str] = None,
                   old_version: Optional[str] = None) -> 'UpdateOutcome':
        """Translate an exception caught at a step boundary into a failed outcome."""
        if isinstance(exc, UpdateError):
            stage = stage or exc.stage
        return cls.failed(stage or "unknown", str(exc) or type(exc).__name__,
                          type(exc).__name__, old_version=old_version)

    @property
    def success(self) -> bool:
        return self.status != STATUS_FAILED

    @property
    def rollback_failed(self) -> bool:
        return self.error == RollbackFailed.__name__

    @property
    def severity(self) -> str:
        if self.rollback_failed:
            return SEVERITY_CRITICAL
        if self.status == STATUS_FAILED:
            return SEVERITY_ERROR
        return SEVERITY_INFO

    @property
    def exit_code(self) -> int:
        if self.rollback_failed:
            return EXIT_ROLLBACK_FAILED
        if self.status == STATUS_FAILED:
            return EXIT_FAILED
        return EXIT_OK

    def describe(self, name: str) -> str:
        """Human-readable one-line summary used for logs and notifications."""
        if self.status == STATUS_UPDATED:
            return f"{name} updated from {self.old_version or 'unknown'} to {self.new_version or 'unknown'}"
        if self.status == STATUS_NO_UPDATE:
            return f"{name} is already up to date ({self.new_version or 'unknown version'})"
        if self.rollback_failed:
            return (f"{name} update FAILED at stage '{self.stage}' and rollback failed: "
                    f"{self.reason}. Service may be stopped; manual intervention required")
        return f"{name} update failed at stage '{self.stage}': {self.reason}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        data["updated"] = self.status == STATUS_UPDATED
        data["exit_code"] = self.exit_code
        data["rollback_success"] = None
        if self.stage == "restart" or self.rollback_failed:
            data["rollback_success"] = not self.rollback_failed
        return data
