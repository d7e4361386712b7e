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
Configuration Loading

Every module ships an index.json next to its index.py:

    {
        "metadata": {"module_name": "filebrowser", "schema_version": "1.0.0", "enabled": true},
        "config": {
            "binary_path": "/usr/local/bin/filebrowser",
            "service_name": "filebrowser",
            "release": {"type": "static", "url": "..."},
            "notifications": {"notify_on_noop": true}
        }
    }

The package-level index.json holds defaults shared by all modules
(notifications, lock directory, timeouts). Module values win key by key.
"""

import copy
import json
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from .index import log_message
from .lock import DEFAULT_LOCK_DIR
from .notifier import build_notifier
from .orchestrator import UpdateConfig
from .release_source import build_release_source
from .service_manager import SystemctlServiceManager

PACKAGE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_GLOBAL_INDEX = {
    "metadata": {
        "schema_version": "1.0.0",
        "channel": "stable"
    },
    "config": {
        "lock_dir": DEFAULT_LOCK_DIR,
        "download_dir": None,
        "timeouts": {
            "discover": 30,
            "download": 300,
            "probe": 10,
            "service": 60,
            "start_settle": 2
        },
        "notifications": {
            "enabled": True,
            "webhook_url": None,
            "payload_format": "json",
            "headers": {},
            "notify_on_noop": False,
            "timeout": 10
        }
    }
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of base with override merged in recursively."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_json_index(directory, defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load an index.json file, falling back to defaults if loading fails.

    Args:
        directory: Directory containing index.json
        defaults: Returned (merged under anything that did load) on failure

    Returns:
        dict: Configuration data
    """
    defaults = defaults or {}
    index_file = Path(directory) / "index.json"
    try:
        with open(index_file, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        log_message(f"No index.json at {index_file}, using defaults", "WARNING")
        return copy.deepcopy(defaults)
    except Exception as e:
        log_message(f"Failed to load {index_file}: {e}", "WARNING")
        return copy.deepcopy(defaults)
    return deep_merge(defaults, data)


def load_global_index(package_dir=None) -> Dict[str, Any]:
    """Load the package-level index.json shared by every module."""
    return load_json_index(package_dir or PACKAGE_DIR, DEFAULT_GLOBAL_INDEX)


def effective_settings(module_index: Dict[str, Any],
                       global_index: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge module 'config' over global 'config'."""
    global_index = global_index if global_index is not None else load_global_index()
    return deep_merge(global_index.get("config", {}), module_index.get("config", {}))


def build_update_config(module_index: Dict[str, Any],
                        global_index: Optional[Dict[str, Any]] = None,
                        session: Optional[requests.Session] = None) -> UpdateConfig:
    """
    Turn a module's index.json (plus global defaults) into an UpdateConfig.

    Args:
        module_index: Loaded module index.json
        global_index: Loaded package index.json (loaded from disk if None)
        session: Optional requests session shared by source, downloader and notifier

    Returns:
        UpdateConfig: Ready to pass to run_update_cycle()
    """
    settings = effective_settings(module_index, global_index)
    metadata = module_index.get("metadata", {})
    timeouts = settings.get("timeouts", {})
    notifications = settings.get("notifications", {})
    session = session or requests.Session()

    release_config = dict(settings.get("release", {}))
    release_config.setdefault("timeout", timeouts.get("discover", 30))

    service_name = settings.get("service_name") or None
    service_manager = None
    if service_name:
        service_manager = SystemctlServiceManager(timeout=timeouts.get("service", 60))

    return UpdateConfig(
        name=metadata.get("module_name"),
        binary_path=Path(settings["binary_path"]),
        service_name=service_name,
        release_source=build_release_source(release_config, session=session),
        notifier=build_notifier(notifications, session=session),
        service_manager=service_manager,
        version_args=settings.get("version_args", ["--version"]),
        version_pattern=settings.get("version_pattern"),
        download_timeout=timeouts.get("download", 300),
        probe_timeout=timeouts.get("probe", 10),
        service_timeout=timeouts.get("service", 60),
        start_settle_seconds=timeouts.get("start_settle", 2),
        notify_on_noop=bool(notifications.get("notify_on_noop", False)),
        lock_dir=settings.get("lock_dir", DEFAULT_LOCK_DIR),
        download_dir=settings.get("download_dir"),
        min_artifact_size=int(settings.get("min_artifact_size", 1)),
        http_session=session,
    )


def module_enabled(module_index: Dict[str, Any]) -> bool:
    return bool(module_index.get("metadata", {}).get("enabled", True))
