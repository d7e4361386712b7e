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
along with this program. If not, see <https://www.gnu.org/licenses/>.
"""

import importlib
import json
import os
import traceback
from typing import Any, Dict, List, Optional

from .utils.index import log_message
from .utils.orchestrator import UpdateConfig, run_update_cycle
from .utils.outcome import UpdateOutcome

__version__ = "1.0.0"

__all__ = [
    'log_message',
    'run_update',
    'run_update_cycle',
    'load_module_index',
    'list_modules',
    'UpdateConfig',
    'UpdateOutcome',
    'MODULES_PATH'
]

MODULES_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "modules")


def load_module_index(module_path: str) -> Optional[Dict[str, Any]]:
    """
    Read the index.json that sits next to a module's index.py.

    Returns:
        dict: Parsed metadata and config, or None when the file is absent or unreadable
    """
    index_file = os.path.join(module_path, "index.json")
    if not os.path.isfile(index_file):
        return None
    try:
        with open(index_file) as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        log_message(f"Invalid index.json in {module_path}: {e}", "ERROR")
        return None


def list_modules(modules_path: str = MODULES_PATH) -> List[str]:
    """Return the names of all module directories that ship an index.json, sorted."""
    if not os.path.isdir(modules_path):
        return []
    return sorted(
        name for name in os.listdir(modules_path)
        if os.path.isfile(os.path.join(modules_path, name, "index.json"))
    )


def run_update(module_name, args=None, callback=None):
    """
    Import binupdates.modules.<module_name> and call its main(args).

    Args:
        module_name (str): Directory name under binupdates/modules
        args (list, optional): Flags for the module ('--check', '--verify', '--version')
        callback (callable, optional): Called as callback(module_name, result)

    Returns:
        The module's result dict, or None if the module could not be imported or crashed
    """
    result = None
    try:
        mod = importlib.import_module(f".modules.{module_name}", package=__name__)
        entry = getattr(mod, "main", None)
        if entry is None:
            log_message(f"Module {module_name} does not define main(args)", "ERROR")
        else:
            log_message(f"Running module {module_name} with args {args or []}")
            result = entry(args)
            log_message(f"Module {module_name} finished")
    except Exception as e:
        log_message(f"Module {module_name} crashed: {e}", "ERROR")
        traceback.print_exc()

    if callable(callback):
        callback(module_name, result)

    return result
