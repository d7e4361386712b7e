"""Shared fakes for the update orchestrator tests.

Binaries are real /bin/sh scripts in tmp_path so the version probe runs a
real subprocess; HTTP and systemctl are faked.
"""

import os
from pathlib import Path

import pytest
import requests

from binupdates.utils.orchestrator import UpdateConfig
from binupdates.utils.outcome import ReleaseDescriptor, ServiceStartFailed, ServiceStopFailed
from binupdates.utils.service_manager import STATUS_RUNNING, STATUS_STOPPED

ARTIFACT_URL = "http://x/bin"


def script_bytes(version: str, padding: str = "") -> bytes:
    body = f"#!/bin/sh\necho \"{version}\"\n"
    if padding:
        body += f"# {padding}\n"
    return body.encode()


def write_binary(path: Path, version: str, padding: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(script_bytes(version, padding))
    os.chmod(path, 0o755)
    return path


class FakeReleaseSource:
    def __init__(self, version=None, url=ARTIFACT_URL, sha256=None, error=None):
        self.descriptor = ReleaseDescriptor(artifact_url=url, version=version, sha256=sha256)
        self.error = error
        self.calls = 0

    def get_latest_release(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.descriptor


class FakeServiceManager:
    """Tracks stop/start calls. start() fails for the first `start_failures` calls."""

    def __init__(self, running=True, start_failures=0, stop_error=None):
        self.running = running
        self.start_failures = start_failures
        self.stop_error = stop_error
        self.calls = []

    def stop(self, service):
        self.calls.append(("stop", service))
        if self.stop_error:
            raise ServiceStopFailed(self.stop_error)
        self.running = False

    def start(self, service):
        self.calls.append(("start", service))
        if self.start_failures > 0:
            self.start_failures -= 1
            raise ServiceStartFailed(f"{service} exited with status 203/EXEC")
        self.running = True

    def status(self, service):
        return STATUS_RUNNING if self.running else STATUS_STOPPED

    @property
    def mutating_calls(self):
        return [c for c in self.calls if c[0] in ("stop", "start")]


class RecordingNotifier:
    def __init__(self, error=None):
        self.error = error
        self.messages = []

    def notify(self, message, severity):
        self.messages.append((message, severity))
        if self.error is not None:
            raise self.error


class FakeResponse:
    def __init__(self, status_code=200, body=b"", json_data=None):
        self.status_code = status_code
        self.body = body
        self.json_data = json_data

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]

    def json(self):
        if self.json_data is None:
            raise ValueError("No JSON object could be decoded")
        return self.json_data


class FakeSession:
    """Stands in for requests.Session: URL -> FakeResponse or exception."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.gets = []
        self.posts = []

    def get(self, url, **kwargs):
        self.gets.append((url, kwargs))
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(status_code=404)
        if isinstance(route, Exception):
            raise route
        return route

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        route = self.routes.get(url, FakeResponse(status_code=204))
        if isinstance(route, Exception):
            raise route
        return route


@pytest.fixture()
def binary(tmp_path):
    return write_binary(tmp_path / "bin" / "filebrowser", "1.1.0")


@pytest.fixture()
def services():
    return FakeServiceManager()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def make_config(tmp_path, binary, services, notifier):
    def _make(source, session=None, **overrides):
        params = dict(
            binary_path=binary,
            release_source=source,
            service_name="filebrowser",
            service_manager=services,
            notifier=notifier,
            start_settle_seconds=0,
            lock_dir=str(tmp_path / "lock"),
            download_dir=str(tmp_path / "downloads"),
            http_session=session or FakeSession(),
        )
        params.update(overrides)
        (tmp_path / "downloads").mkdir(exist_ok=True)
        return UpdateConfig(**params)
    return _make
