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
import stat
import tempfile
import time
from pathlib import Path
from typing import Optional

import requests

from .index import file_sha256, log_message
from .outcome import DownloadFailed, ValidationFailed

CHUNK_SIZE = 1024 * 256


def download_artifact(url: str, dest_dir: Optional[str] = None, timeout: float = 300,
                      session: Optional[requests.Session] = None) -> Path:
    """
    Stream an artifact to a temporary file.

    Args:
        url: Artifact URL
        dest_dir: Directory for the temporary file (system temp dir if None)
        timeout: Connect/read timeout, and the limit on the whole transfer, in seconds
        session: Optional requests session

    Returns:
        Path: The downloaded file. The caller owns it and must remove it.

    Raises:
        DownloadFailed: transport error, non-2xx status, zero-byte body, or overrun deadline
    """
    http = session or requests
    fd, tmp_name = tempfile.mkstemp(prefix="binupdates-", suffix=".download", dir=dest_dir)
    tmp_path = Path(tmp_name)
    log_message(f"Downloading {url}...")
    deadline = time.monotonic() + timeout
    try:
        with os.fdopen(fd, "wb") as out:
            with http.get(url, stream=True, timeout=timeout, allow_redirects=True) as response:
                if response.status_code >= 400:
                    raise DownloadFailed(f"HTTP {response.status_code} for {url}")
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        out.write(chunk)
                    if time.monotonic() > deadline:
                        raise DownloadFailed(f"download of {url} exceeded {timeout}s")
        size = tmp_path.stat().st_size
        if size == 0:
            raise DownloadFailed(f"downloaded artifact from {url} is empty")
        log_message(f"Downloaded {size} bytes to {tmp_path}")
        return tmp_path
    except DownloadFailed:
        tmp_path.unlink(missing_ok=True)
        raise
    except (requests.RequestException, OSError) as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadFailed(f"download of {url} failed: {e}") from e


def validate_artifact(artifact: Path, min_size: int = 1,
                      expected_sha256: Optional[str] = None) -> str:
    """
    Minimal integrity gate for a downloaded binary.

    Checks the size, optionally the SHA-256 digest, and that the executable
    bit can be set.

    Returns:
        str: The artifact's SHA-256 digest
    """
    try:
        size = artifact.stat().st_size
    except OSError as e:
        raise ValidationFailed(f"cannot stat downloaded artifact: {e}") from e
    if size < max(min_size, 1):
        raise ValidationFailed(f"artifact is {size} bytes, expected at least {max(min_size, 1)}")

    digest = file_sha256(artifact)
    if not digest:
        raise ValidationFailed("artifact could not be read for checksum")
    if expected_sha256 and digest.lower() != expected_sha256.strip().lower():
        raise ValidationFailed(f"checksum mismatch: expected {expected_sha256}, got {digest}")

    try:
        mode = artifact.stat().st_mode
        os.chmod(artifact, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as e:
        raise ValidationFailed(f"cannot set executable permission: {e}") from e

    log_message(f"Artifact validated: {size} bytes, sha256 {digest[:12]}")
    return digest
