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

MODULE_DIR = Path(__file__).parent

# yt-dlp is a CLI tool, not a service: no stop/start around the swap
DEFAULT_CONFIG = {
    "metadata": {
        "module_name": "ytdlp",
        "schema_version": "1.0.0",
        "enabled": True
    },
    "config": {
        "binary_path": "/usr/local/bin/yt-dlp",
        "service_name": None,
        "version_args": ["--version"],
        "release": {
            "type": "github",
            "repo": "yt-dlp/yt-dlp",
            "asset_pattern": "^yt-dlp_linux$"
        },
        "schedule": "30 3 * * 0"
    }
}


def load_module_config(module_dir=MODULE_DIR):
    """Load the module's index.json, falling back to DEFAULT_CONFIG."""
    return load_json_index(module_dir, DEFAULT_CONFIG)


def get_ytdlp_version(config):
    """
    Get the current version of yt-dlp if installed.
    Returns:
        str: Version string (e.g. '2025.01.15') or None if not installed
    """
    settings = config["config"]
    return probe_version(settings["binary_path"], settings.get("version_args"),
                         settings.get("version_pattern"))


def verify_ytdlp_installation(config):
    bin_path = config["config"]["binary_path"]
    results = {
        "binary_exists": os.path.isfile(bin_path),
        "binary_executable": os.access(bin_path, os.X_OK),
        "version_readable": False,
        "version": None
    }
    if results["binary_executable"]:
        results["version"] = get_ytdlp_version(config)
        results["version_readable"] = results["version"] is not None

    for check in ("binary_exists", "binary_executable", "version_readable"):
        log_message(f"yt-dlp verification - {check}: {'✓' if results[check] else '✗'}")
    return results


def main(args=None):
    """
    Main entry point for the yt-dlp update module.
    Args:
        args: List of arguments (supports '--version', '--check', '--verify')
    Returns:
        dict: Status and results of the update
    """
    args = args or []
    config = load_module_config()

    if "--version" in args:
        version = get_ytdlp_version(config)
        if version:
            log_message(f"Detected yt-dlp version: {version}")
            return {"success": True, "version": version}
        return {"success": False, "error": "Version detection failed"}

    if "--verify" in args:
        verification = verify_ytdlp_installation(config)
        return {
            "success": verification["binary_executable"] and verification["version_readable"],
            "verification": verification,
            "version": verification["version"]
        }

    orchestrator = UpdateOrchestrator(build_update_config(config, load_global_index()))
    if "--check" in args:
        return orchestrator.check()

    log_message("Starting yt-dlp module update...")
    return orchestrator.run().to_dict()


if __name__ == "__main__":
    main()
