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
import sys
import tempfile
from pathlib import Path
from typing import Optional

from .index import log_message

DEFAULT_CRON_DIR = "/etc/cron.d"
DEFAULT_LOG_DIR = "/var/log"


def render_cron_entry(module_name: str, schedule: str, python: Optional[str] = None,
                      log_dir: str = DEFAULT_LOG_DIR, user: str = "root") -> str:
    """
    Render the /etc/cron.d file body that runs one module's update cycle.

    Args:
        module_name: Module to update
        schedule: Five-field cron expression, e.g. "15 4 * * *"
        python: Interpreter path (the running interpreter if None)
        log_dir: Directory for the module's update log
        user: User the job runs as
    """
    fields = schedule.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron schedule for {module_name}: '{schedule}'")
    python = python or sys.executable
    log_path = os.path.join(log_dir, f"binupdates-{module_name}.log")
    command = f"{python} -m binupdates.index --module {module_name} >> {log_path} 2>&1"
    return (
        f"# Automatic update for {module_name} (managed by binupdates)\n"
        f"SHELL=/bin/sh\n"
        f"PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin\n"
        f"{' '.join(fields)} {user} {command}\n"
    )


def register_cron(module_name: str, schedule: str, cron_dir: str = DEFAULT_CRON_DIR,
                  python: Optional[str] = None, log_dir: str = DEFAULT_LOG_DIR) -> Path:
    """
    Write (or overwrite) the cron file for a module. Mode 0644, replaced atomically.

    Returns:
        Path: The cron file written
    """
    body = render_cron_entry(module_name, schedule, python=python, log_dir=log_dir)
    target = Path(cron_dir) / f"binupdates-{module_name}"
    target.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile('w', delete=False, dir=target.parent,
                                     prefix=f".{target.name}.") as tmp:
        tmp.write(body)
        tmp_path = Path(tmp.name)
    os.chmod(tmp_path, 0o644)
    os.replace(tmp_path, target)
    log_message(f"Cron job for {module_name} written to {target} ({schedule})")
    return target
