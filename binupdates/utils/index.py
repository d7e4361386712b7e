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

import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Optional

from packaging.version import InvalidVersion, Version

LOGGER_NAME = "binupdates"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def log_message(message: str, level: str = "INFO") -> None:
    """
    Log a message through the shared binupdates logger.
    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    logging.getLogger(LOGGER_NAME).log(_LEVELS.get(level.upper(), logging.INFO), message)


def normalize_version(raw: Optional[str]) -> Optional[str]:
    """Strip whitespace and a leading 'v' from a version token. Empty tokens become None."""
    if raw is None:
        return None
    token = str(raw).strip()
    if token[:1] in ("v", "V") and token[1:2].isdigit():
        token = token[1:]
    return token or None


def versions_equal(left: Optional[str], right: Optional[str]) -> bool:
    """
    Compare two opaque version tokens.

    Tokens that both parse as PEP 440 versions are compared semantically
    ("2025.01.15" == "2025.1.15"); anything else falls back to string equality.
    An absent token never equals anything.
    """
    left = normalize_version(left)
    right = normalize_version(right)
    if left is None or right is None:
        return False
    try:
        return Version(left) == Version(right)
    except InvalidVersion:
        return left == right


def parse_version_output(output: str, pattern: Optional[str] = None) -> Optional[str]:
    """
    Extract a version token from a binary's version output.

    Args:
        output: Raw stdout of the version probe
        pattern: Optional regex; group 1 (or the whole match) is the version

    Returns:
        str: The version token, or None if nothing usable was found
    """
    text = (output or "").strip()
    if not text:
        return None
    if pattern:
        match = re.search(pattern, text)
        if not match:
            log_message(f"Could not parse version from output: '{text}'", "WARNING")
            return None
        return normalize_version(match.group(1) if match.groups() else match.group(0))
    return normalize_version(text.splitlines()[0])


def file_sha256(file_path) -> str:
    """Calculate the SHA-256 checksum of a file. Returns an empty string if it cannot be read."""
    sha256_hash = hashlib.sha256()
    try:
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                sha256_hash.update(chunk)
    except (IOError, OSError):
        return ""
    return sha256_hash.hexdigest()


def get_module_version(module_path: str) -> str:
    """Return metadata.schema_version from a module's index.json, or "unknown"."""
    index_path = Path(module_path) / "index.json"
    try:
        with open(index_path) as f:
            metadata = json.load(f).get("metadata", {})
    except (OSError, ValueError, AttributeError) as e:
        log_message(f"Cannot read schema version from {index_path}: {e}", "ERROR")
        return "unknown"
    return metadata.get("schema_version", "unknown")
