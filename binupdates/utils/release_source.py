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
Release Sources

A release source answers one question: what is the latest build, and where
can it be downloaded? Both implementations raise SourceUnavailable on any
error so the orchestrator can stop before touching the host.
"""

import os
import re
from typing import Any, Dict, Optional

import requests

from .index import log_message, normalize_version
from .outcome import ReleaseDescriptor, SourceUnavailable

GITHUB_API_ROOT = "https://api.github.com"


class GitHubReleaseSource:
    """Latest release of a GitHub repository, resolved through the releases API."""

    def __init__(self, repo: str, asset_pattern: str, api_url: Optional[str] = None,
                 token: Optional[str] = None, timeout: float = 30,
                 session: Optional[requests.Session] = None):
        self.repo = repo
        self.asset_pattern = re.compile(asset_pattern)
        self.api_url = api_url or f"{GITHUB_API_ROOT}/repos/{repo}/releases/latest"
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _select_asset(self, data: Dict[str, Any]) -> Dict[str, Any]:
        assets = data.get("assets") or []
        for asset in assets:
            if self.asset_pattern.search(asset.get("name", "")):
                return asset
        names = ", ".join(a.get("name", "?") for a in assets) or "none"
        raise SourceUnavailable(
            f"no asset matching '{self.asset_pattern.pattern}' in {self.repo} release (assets: {names})"
        )

    def get_latest_release(self) -> ReleaseDescriptor:
        log_message(f"Querying latest release for {self.repo}: {self.api_url}", "DEBUG")
        try:
            response = self.session.get(self.api_url, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise SourceUnavailable(f"failed to query {self.api_url}: {e}") from e
        except ValueError as e:
            raise SourceUnavailable(f"malformed release data from {self.api_url}: {e}") from e

        if not isinstance(data, dict):
            raise SourceUnavailable(f"malformed release data from {self.api_url}")

        asset = self._select_asset(data)
        digest = asset.get("digest") or ""
        sha256 = digest.split(":", 1)[1] if digest.startswith("sha256:") else None

        descriptor = ReleaseDescriptor(
            artifact_url=asset.get("browser_download_url", ""),
            version=normalize_version(data.get("tag_name")),
            sha256=sha256,
        )
        descriptor.validate()
        log_message(f"Latest {self.repo} release: {descriptor.version} ({asset.get('name')})")
        return descriptor


class StaticReleaseSource:
    """
    A fixed 'latest download' URL.

    No version is known ahead of the download, so the orchestrator decides
    by comparing the downloaded bytes against the live binary.
    """

    def __init__(self, url: str, version: Optional[str] = None, sha256: Optional[str] = None):
        self.url = url
        self.version = version
        self.sha256 = sha256

    def get_latest_release(self) -> ReleaseDescriptor:
        descriptor = ReleaseDescriptor(
            artifact_url=self.url or "",
            version=normalize_version(self.version),
            sha256=self.sha256,
        )
        descriptor.validate()
        return descriptor


def build_release_source(release_config: Dict[str, Any],
                         session: Optional[requests.Session] = None):
    """
    Create a release source from a module's 'release' configuration block.

    Args:
        release_config: Dict with 'type' ('github' or 'static') and type-specific keys
        session: Optional requests session shared with the downloader

    Returns:
        GitHubReleaseSource or StaticReleaseSource
    """
    source_type = release_config.get("type", "github")
    if source_type == "github":
        token = release_config.get("token") or os.environ.get("GITHUB_TOKEN")
        return GitHubReleaseSource(
            repo=release_config["repo"],
            asset_pattern=release_config["asset_pattern"],
            api_url=release_config.get("api_url"),
            token=token,
            timeout=release_config.get("timeout", 30),
            session=session,
        )
    if source_type == "static":
        return StaticReleaseSource(
            url=release_config["url"],
            version=release_config.get("version"),
            sha256=release_config.get("sha256"),
        )
    raise ValueError(f"Unknown release source type: {source_type}")
