#!/usr/bin/env python3
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

import argparse
import logging
import os
import sys

from . import MODULES_PATH, list_modules, load_module_index, run_update
from .utils.index import log_message
from .utils.outcome import EXIT_FAILED, EXIT_OK, EXIT_ROLLBACK_FAILED
from .utils.schedule import DEFAULT_CRON_DIR, register_cron


def setup_global_update_logging(debug: bool = False):
    """
    Log to stdout only; cron redirects output to the per-module log file.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler.setFormatter(unified_format)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)
    logging.info("=" * 80)
    logging.info("BINARY UPDATE SESSION STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Python Version: {sys.version.split()[0]}")
    logging.info("=" * 80)


def get_enabled_modules(modules_path: str = MODULES_PATH, selected=None) -> list:
    """
    Get the modules that should run.

    Args:
        modules_path: Directory holding the module directories
        selected: Optional module names requested on the command line

    Returns:
        list: Names of enabled modules, in a stable order
    """
    available = list_modules(modules_path)
    if selected:
        unknown = [name for name in selected if name not in available]
        for name in unknown:
            log_message(f"Unknown module: {name}", "ERROR")
        candidates = [name for name in selected if name in available]
    else:
        candidates = available

    enabled_modules = []
    for name in candidates:
        index = load_module_index(os.path.join(modules_path, name)) or {}
        if index.get("metadata", {}).get("enabled", True):
            enabled_modules.append(name)
        else:
            log_message(f"Skipping disabled module: {name}")
    return enabled_modules


def result_exit_code(result) -> int:
    """Map one module's result dict to a process exit code."""
    if not isinstance(result, dict):
        return EXIT_FAILED
    if "exit_code" in result:
        return int(result["exit_code"])
    return EXIT_OK if result.get("success") else EXIT_FAILED


def run_enabled_modules(enabled_modules: list, args=None) -> dict:
    """Run every enabled module and log a summary."""
    results = {}

    if not enabled_modules:
        log_message("No enabled modules to run")
        return results

    log_message(f"Running {len(enabled_modules)} enabled modules...")

    for module_name in enabled_modules:
        log_message("-" * 60)
        log_message(f"MODULE: {module_name} - START")
        result = run_update(module_name, args)
        log_message(f"MODULE: {module_name} - END")
        results[module_name] = result

    updated = [m for m, r in results.items() if isinstance(r, dict) and r.get("updated")]
    failed = [m for m, r in results.items() if result_exit_code(r) != EXIT_OK]
    critical = [m for m, r in results.items() if result_exit_code(r) == EXIT_ROLLBACK_FAILED]

    log_message("Module execution completed:")
    log_message(f"  - Total modules: {len(results)}")
    log_message(f"  - Updated: {len(updated)}")
    log_message(f"  - Failed: {len(failed)}")
    if updated:
        log_message(f"  - Updated modules: {', '.join(updated)}")
    if failed:
        log_message(f"  - Failed modules: {', '.join(failed)}", "ERROR")
    if critical:
        log_message(f"  - Rollback failed, manual intervention required: {', '.join(critical)}", "CRITICAL")

    return results


def summarize_exit_code(results: dict) -> int:
    """0 if every module succeeded, 3 if any rollback failed, otherwise 1 on any failure."""
    codes = [result_exit_code(r) for r in results.values()]
    if EXIT_ROLLBACK_FAILED in codes:
        return EXIT_ROLLBACK_FAILED
    if any(code != EXIT_OK for code in codes):
        return EXIT_FAILED
    return EXIT_OK


def print_module_list(modules_path: str = MODULES_PATH) -> int:
    for name in list_modules(modules_path):
        index = load_module_index(os.path.join(modules_path, name)) or {}
        metadata = index.get("metadata", {})
        config = index.get("config", {})
        state = "enabled" if metadata.get("enabled", True) else "disabled"
        print(f"{name:<16} {metadata.get('schema_version', 'unknown'):<8} {state:<9} "
              f"{config.get('binary_path', '?')} (service: {config.get('service_name') or 'none'})")
    return EXIT_OK


def install_cron_jobs(enabled_modules: list, cron_dir: str = DEFAULT_CRON_DIR,
                      modules_path: str = MODULES_PATH) -> int:
    exit_code = EXIT_OK
    for name in enabled_modules:
        index = load_module_index(os.path.join(modules_path, name)) or {}
        schedule = index.get("config", {}).get("schedule")
        if not schedule:
            log_message(f"Module {name} has no schedule configured, skipping cron registration", "WARNING")
            continue
        try:
            register_cron(name, schedule, cron_dir=cron_dir)
        except (OSError, ValueError) as e:
            log_message(f"Failed to register cron job for {name}: {e}", "ERROR")
            exit_code = EXIT_FAILED
    return exit_code


def main(argv=None):
    """Main entry point for the binary update orchestrator."""
    parser = argparse.ArgumentParser(description="Binary update orchestrator")
    parser.add_argument("--module", action="append", metavar="MODULE",
                        help="Run only this module (repeatable); default is every enabled module")
    parser.add_argument("--check-only", action="store_true",
                        help="Report available updates without installing anything")
    parser.add_argument("--list-modules", action="store_true",
                        help="List available modules and exit")
    parser.add_argument("--install-cron", action="store_true",
                        help="Write /etc/cron.d entries for the selected modules and exit")
    parser.add_argument("--cron-dir", default=DEFAULT_CRON_DIR,
                        help="Directory for cron files (default: %(default)s)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    setup_global_update_logging(args.debug)

    try:
        if args.list_modules:
            return print_module_list()

        enabled_modules = get_enabled_modules(selected=args.module)
        if args.module and len(enabled_modules) != len(args.module):
            log_message("Some requested modules are unknown or disabled", "WARNING")

        if args.install_cron:
            return install_cron_jobs(enabled_modules, cron_dir=args.cron_dir)

        module_args = ["--check"] if args.check_only else None
        results = run_enabled_modules(enabled_modules, module_args)
        if args.module and not results:
            return EXIT_FAILED
        return summarize_exit_code(results)
    except KeyboardInterrupt:
        log_message("Update interrupted by user", "WARNING")
        return 130


if __name__ == "__main__":
    sys.exit(main())
