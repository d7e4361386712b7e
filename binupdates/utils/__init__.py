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
Utilities for the binary update system.

This module provides the machinery shared by every update module.
"""

from .index import log_message, get_module_version, normalize_version, versions_equal, parse_version_output, file_sha256
from .outcome import (
    ReleaseDescriptor,
    InstallationState,
    UpdateOutcome,
    UpdateError,
    SourceUnavailable,
    DownloadFailed,
    ValidationFailed,
    ServiceStopFailed,
    SwapFailed,
    ServiceStartFailed,
    RollbackFailed,
    CycleLocked,
    NotificationFailed,
    EXIT_OK,
    EXIT_FAILED,
    EXIT_ROLLBACK_FAILED,
)
from .release_source import GitHubReleaseSource, StaticReleaseSource, build_release_source
from .service_manager import SystemctlServiceManager, NullServiceManager
from .notifier import WebhookNotifier, build_notifier
from .binary_swap import BinarySwap
from .lock import UpdateLock
from .orchestrator import UpdateConfig, UpdateOrchestrator, probe_version, run_update_cycle
from .config import load_json_index, load_global_index, build_update_config, module_enabled
from .schedule import register_cron, render_cron_entry

__all__ = [
    'log_message',
    'get_module_version',
    'normalize_version',
    'versions_equal',
    'parse_version_output',
    'file_sha256',
    'ReleaseDescriptor',
    'InstallationState',
    'UpdateOutcome',
    'UpdateError',
    'SourceUnavailable',
    'DownloadFailed',
    'ValidationFailed',
    'ServiceStopFailed',
    'SwapFailed',
    'ServiceStartFailed',
    'RollbackFailed',
    'CycleLocked',
    'NotificationFailed',
    'EXIT_OK',
    'EXIT_FAILED',
    'EXIT_ROLLBACK_FAILED',
    'GitHubReleaseSource',
    'StaticReleaseSource',
    'build_release_source',
    'SystemctlServiceManager',
    'NullServiceManager',
    'WebhookNotifier',
    'build_notifier',
    'BinarySwap',
    'UpdateLock',
    'UpdateConfig',
    'UpdateOrchestrator',
    'probe_version',
    'run_update_cycle',
    'load_json_index',
    'load_global_index',
    'build_update_config',
    'module_enabled',
    'register_cron',
    'render_cron_entry',
]
