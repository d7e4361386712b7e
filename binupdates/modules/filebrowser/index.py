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

import os
from pathlib import Path

from binupdates.utils.index import log_message
from binupdates.utils.config import build_update_config, load_global_index, load_json_index
from binupdates.utils.orchestrator import UpdateOrchestrator, probe_version
from binupdates.utils.service_manager import STATUS_RUNNING, SystemctlServiceManager

MODULE_DIR = Path(__file__).parent

DEFAULT_CONFIG = {
    "metadata": {
        "module_name": "filebrowser",
        "schema_version": "1.0.0",
        "enabled": True
    },
    "config": {
        "binary_path": "/usr/local/bin/filebrowser",
        "service_name": "filebrowser",
        "version_args": ["version"],
        "version_pattern": r"v?(\d+\.\d+\.\d+(?:-[0-9A-Za-z.]+)?)",
        "release": {
            "type": "static",
            "url": "https://github.com/gtsteffaniak/filebrowser/releases/latest/download/linux-amd64-filebrowser"
        },
        "directories": {
            "config_dir": "/etc/filebrowser",
            "config_file": "/etc/filebrowser/config.yaml",
            "data_dir": "/srv"
        },
        "schedule": "15 4 * * *"
    }
}


def load_module_config(module_dir=MODULE_DIR):
    """
    Load configuration from the module's index.json file.
    Returns:
        dict: Configuration data or default values if loading fails
    """
    return load_json_index(module_dir, DEFAULT_CONFIG)


def get_filebrowser_version(config):
    """Detect currently installed Filebrowser version."""
    settings = config["config"]
    return probe_version(settings["binary_path"], settings.get("version_args"),
                         settings.get("version_pattern"))


def verify_filebrowser_installation(config, service_manager=None):
    """
    Verify that Filebrowser is properly installed and functional.
    Returns:
        dict: Verification results with status and details
    """
    settings = config["config"]
    bin_path = settings["binary_path"]
    service_manager = service_manager or SystemctlServiceManager()
    results = {
        "binary_exists": os.path.exists(bin_path),
        "binary_executable": os.access(bin_path, os.X_OK),
        "version_readable": False,
        "service_active": service_manager.status(settings["service_name"]) == STATUS_RUNNING,
        "version": None,
        "paths": {"binary": bin_path}
    }

    if results["binary_executable"]:
        version = get_filebrowser_version(config)
        results["version_readable"] = version is not None
        results["version"] = version

    for key, path in settings.get("directories", {}).items():
        results["paths"][key] = path
        results[f"{key}_exists"] = os.path.exists(path)

    for check, result in results.items():
        if check not in ("version", "paths"):
            status = "✓" if result else "✗"
            log_message(f"Filebrowser verification - {check}: {status}")

    return results


def main(args=None):
    """
    Main entry point for Filebrowser update module.
    Args:
        args: List of arguments (supports '--version', '--check', '--verify')
    Returns:
        dict: Status and results of the update
    """
    if args is None:
        args = []

    config = load_module_config()

    if args and args[0] == "--version":
        version = get_filebrowser_version(config)
        if version:
            log_message(f"Detected Filebrowser version: {version}")
            return {"success": True, "version": version}
        log_message("Could not detect Filebrowser version", "ERROR")
        return {"success": False, "error": "Version detection failed"}

    if args and args[0] == "--verify":
        log_message("Running Filebrowser verification...")
        verification = verify_filebrowser_installation(config)
        all_checks_passed = all([
            verification["binary_exists"],
            verification["binary_executable"],
            verification["version_readable"],
            verification["service_active"]
        ])
        return {"success": all_checks_passed, "verification": verification,
                "version": verification["version"]}

    update_config = build_update_config(config, load_global_index())
    orchestrator = UpdateOrchestrator(update_config)

    if args and args[0] == "--check":
        return orchestrator.check()

    log_message("Starting Filebrowser module update...")
    return orchestrator.run().to_dict()


if __name__ == "__main__":
    main()
