"""Update cycle behavior: no-op, download failures, swap, rollback, notifications."""

import logging
import os
import signal
from unittest.mock import patch

import pytest
import requests

from binupdates.utils import binary_swap
from binupdates.utils.binary_swap import previous_binary_path
from binupdates.utils.lock import UpdateLock
from binupdates.utils.orchestrator import UpdateOrchestrator, probe_version, run_update_cycle
from binupdates.utils.outcome import (
    EXIT_FAILED,
    EXIT_OK,
    EXIT_ROLLBACK_FAILED,
    STATUS_FAILED,
    STATUS_NO_UPDATE,
    STATUS_UPDATED,
    SourceUnavailable,
    SwapFailed,
)
from binupdates.utils.index import file_sha256
from binupdates.utils.service_manager import NullServiceManager

from conftest import (
    ARTIFACT_URL,
    FakeReleaseSource,
    FakeResponse,
    FakeServiceManager,
    FakeSession,
    RecordingNotifier,
    script_bytes,
    write_binary,
)


def new_build_session(version="1.2.0", padding=""):
    return FakeSession({ARTIFACT_URL: FakeResponse(body=script_bytes(version, padding))})


# =====================================================================
# Version probe
# =====================================================================

def test_probe_reads_first_line(binary):
    assert probe_version(binary) == "1.1.0"


def test_probe_applies_pattern(tmp_path):
    path = write_binary(tmp_path / "fb", "FileBrowser Quantum Version : v0.7.12-beta")
    assert probe_version(path, ["version"], r"v?(\d+\.\d+\.\d+(?:-[0-9A-Za-z.]+)?)") == "0.7.12-beta"


def test_probe_missing_binary_is_none(tmp_path):
    assert probe_version(tmp_path / "nope") is None


def test_probe_failing_binary_is_none(tmp_path):
    path = tmp_path / "broken"
    path.write_text("#!/bin/sh\nexit 1\n")
    os.chmod(path, 0o755)
    assert probe_version(path) is None


# =====================================================================
# Up to date
# =====================================================================

def test_same_version_touches_nothing(make_config, binary, services, notifier):
    session = new_build_session()
    before = binary.read_bytes()
    mtime = binary.stat().st_mtime_ns

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="v1.1.0"), session))

    assert outcome.status == STATUS_NO_UPDATE
    assert outcome.exit_code == EXIT_OK
    assert session.gets == []
    assert services.mutating_calls == []
    assert binary.read_bytes() == before
    assert binary.stat().st_mtime_ns == mtime
    assert notifier.messages == []


def test_noop_notification_is_optional(make_config, notifier):
    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.1.0"), notify_on_noop=True))

    assert outcome.status == STATUS_NO_UPDATE
    assert len(notifier.messages) == 1
    assert notifier.messages[0][1] == "info"


def test_unversioned_identical_build_skips_restart(make_config, binary, services):
    session = FakeSession({ARTIFACT_URL: FakeResponse(body=binary.read_bytes())})

    outcome = run_update_cycle(make_config(FakeReleaseSource(version=None), session))

    assert outcome.status == STATUS_NO_UPDATE
    assert len(session.gets) == 1
    assert services.mutating_calls == []


def test_republished_identical_version_reports_no_update(make_config, binary):
    # different bytes, same reported version
    session = FakeSession({ARTIFACT_URL: FakeResponse(body=script_bytes("1.1.0", "rebuilt"))})

    outcome = run_update_cycle(make_config(FakeReleaseSource(version=None), session))

    assert outcome.status == STATUS_NO_UPDATE
    assert binary.read_bytes() == script_bytes("1.1.0", "rebuilt")


# =====================================================================
# Successful update
# =====================================================================

def test_update_scenario(make_config, binary, services, notifier):
    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    assert outcome.status == STATUS_UPDATED
    assert (outcome.old_version, outcome.new_version) == ("1.1.0", "1.2.0")
    assert outcome.exit_code == EXIT_OK
    assert binary.read_bytes() == script_bytes("1.2.0")
    assert os.access(binary, os.X_OK)
    assert services.mutating_calls == [("stop", "filebrowser"), ("start", "filebrowser")]
    assert notifier.messages == [("filebrowser updated from 1.1.0 to 1.2.0", "info")]
    assert not binary.with_name("filebrowser.previous").exists()


def test_update_swaps_with_single_rename(make_config, binary):
    with patch("binupdates.utils.binary_swap.os.replace", wraps=os.replace) as replace:
        run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    assert replace.call_count == 1
    staged, target = replace.call_args[0]
    assert os.path.dirname(staged) == str(binary.parent)
    assert str(target) == str(binary)


def test_first_install_without_binary(make_config, binary):
    binary.unlink()

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    assert outcome.status == STATUS_UPDATED
    assert outcome.old_version is None
    assert outcome.new_version == "1.2.0"
    assert binary.read_bytes() == script_bytes("1.2.0")


def test_unversioned_release_uses_probe(make_config, binary):
    outcome = run_update_cycle(make_config(FakeReleaseSource(version=None), new_build_session()))

    assert outcome.status == STATUS_UPDATED
    assert (outcome.old_version, outcome.new_version) == ("1.1.0", "1.2.0")


def test_unversioned_binaries_report_digests(make_config, tmp_path):
    path = tmp_path / "bin" / "silent"
    path.write_bytes(b"#!/bin/sh\nexit 0\n")
    os.chmod(path, 0o755)
    new_body = b"#!/bin/sh\n# new build\nexit 0\n"
    session = FakeSession({ARTIFACT_URL: FakeResponse(body=new_body)})

    outcome = run_update_cycle(make_config(FakeReleaseSource(version=None), session,
                                           binary_path=path, version_args=[]))

    assert outcome.status == STATUS_UPDATED
    assert outcome.new_version.startswith("sha256:")
    assert outcome.old_version != outcome.new_version
    assert path.read_bytes() == new_body


def test_stopped_service_is_started_after_update(make_config, services):
    services.running = False

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    assert outcome.status == STATUS_UPDATED
    assert services.mutating_calls == [("start", "filebrowser")]


def test_binary_without_service(make_config, binary):
    config = make_config(FakeReleaseSource(version="1.2.0"), new_build_session(),
                         service_name=None, service_manager=None)

    outcome = run_update_cycle(config)

    assert isinstance(config.service_manager, NullServiceManager)
    assert outcome.status == STATUS_UPDATED
    assert binary.read_bytes() == script_bytes("1.2.0")


def test_installation_state_tracks_versions(make_config):
    orchestrator = UpdateOrchestrator(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    orchestrator.run()

    assert orchestrator.state.current_version == "1.2.0"
    assert orchestrator.state.service_name == "filebrowser"


def test_download_is_cleaned_up(make_config, tmp_path):
    run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    assert list((tmp_path / "downloads").iterdir()) == []


# =====================================================================
# Failures before the swap
# =====================================================================

@pytest.mark.parametrize("error", [
    SourceUnavailable("api.github.com unreachable"),
    requests.ConnectionError("dns failure"),
])
def test_discover_failure(make_config, binary, services, notifier, error):
    before = binary.read_bytes()

    outcome = run_update_cycle(make_config(FakeReleaseSource(error=error)))

    assert outcome.status == STATUS_FAILED
    assert outcome.stage == "discover"
    assert outcome.error == "SourceUnavailable"
    assert binary.read_bytes() == before
    assert services.mutating_calls == []
    assert [severity for _, severity in notifier.messages] == ["error"]


def test_empty_artifact_url_is_malformed(make_config, services):
    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0", url="")))

    assert outcome.stage == "discover"
    assert services.mutating_calls == []


@pytest.mark.parametrize("route", [
    FakeResponse(status_code=404),
    FakeResponse(status_code=200, body=b""),
    requests.ConnectionError("connection reset"),
    requests.Timeout("read timed out"),
])
def test_download_failure_leaves_host_untouched(make_config, binary, services, notifier, route):
    before = binary.read_bytes()
    session = FakeSession({ARTIFACT_URL: route})

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), session))

    assert outcome.status == STATUS_FAILED
    assert outcome.stage == "download"
    assert outcome.error == "DownloadFailed"
    assert outcome.exit_code == EXIT_FAILED
    assert binary.read_bytes() == before
    assert services.running is True
    assert services.mutating_calls == []
    assert len(notifier.messages) == 1
    assert notifier.messages[0][1] == "error"


def test_checksum_mismatch_fails_validation(make_config, binary, services):
    before = binary.read_bytes()
    source = FakeReleaseSource(version="1.2.0", sha256="0" * 64)

    outcome = run_update_cycle(make_config(source, new_build_session()))

    assert outcome.stage == "validate"
    assert outcome.error == "ValidationFailed"
    assert binary.read_bytes() == before
    assert services.mutating_calls == []


def test_matching_checksum_passes(make_config, binary, tmp_path):
    expected = file_sha256(write_binary(tmp_path / "expected", "1.2.0"))
    source = FakeReleaseSource(version="1.2.0", sha256=expected)

    outcome = run_update_cycle(make_config(source, new_build_session()))

    assert outcome.status == STATUS_UPDATED


def test_stop_failure_aborts_before_swap(make_config, binary, notifier):
    services = FakeServiceManager(stop_error="Job for filebrowser.service canceled")
    before = binary.read_bytes()

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session(),
                                           service_manager=services))

    assert outcome.stage == "stop"
    assert outcome.error == "ServiceStopFailed"
    assert binary.read_bytes() == before
    assert ("start", "filebrowser") not in services.calls
    assert notifier.messages[0][1] == "error"


def test_swap_failure_restarts_old_binary(make_config, binary, services):
    before = binary.read_bytes()

    with patch("binupdates.utils.orchestrator.BinarySwap.install",
               side_effect=SwapFailed("disk full")):
        outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    assert outcome.stage == "swap"
    assert outcome.error == "SwapFailed"
    assert binary.read_bytes() == before
    assert services.running is True
    assert services.mutating_calls == [("stop", "filebrowser"), ("start", "filebrowser")]


# =====================================================================
# Rollback
# =====================================================================

def test_failed_start_rolls_back_to_old_bytes(make_config, binary, notifier):
    services = FakeServiceManager(start_failures=1)
    before = binary.read_bytes()

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session(),
                                           service_manager=services))

    assert outcome.status == STATUS_FAILED
    assert outcome.stage == "restart"
    assert outcome.error == "ServiceStartFailed"
    assert outcome.exit_code == EXIT_FAILED
    assert outcome.to_dict()["rollback_success"] is True
    assert binary.read_bytes() == before
    assert probe_version(binary) == "1.1.0"
    assert services.running is True
    assert notifier.messages[0][1] == "error"


def test_failed_rollback_is_critical(make_config, binary, notifier):
    services = FakeServiceManager(start_failures=2)

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session(),
                                           service_manager=services))

    assert outcome.stage == "restart"
    assert outcome.error == "RollbackFailed"
    assert outcome.exit_code == EXIT_ROLLBACK_FAILED
    assert outcome.to_dict()["rollback_success"] is False
    assert binary.exists()
    assert notifier.messages == [(outcome.describe("filebrowser"), "critical")]


def test_first_install_start_failure_cannot_roll_back(make_config, binary):
    binary.unlink()
    services = FakeServiceManager(start_failures=1)

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session(),
                                           service_manager=services))

    assert outcome.error == "RollbackFailed"
    assert binary.read_bytes() == script_bytes("1.2.0")


# =====================================================================
# Notifications and locking
# =====================================================================

def test_unreachable_notifier_does_not_change_outcome(make_config, caplog):
    failing = RecordingNotifier(error=requests.ConnectionError("webhook down"))

    with caplog.at_level(logging.WARNING, logger="binupdates"):
        outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session(),
                                               notifier=failing))

    assert outcome.status == STATUS_UPDATED
    assert outcome.exit_code == EXIT_OK
    assert len(failing.messages) == 1
    assert "Notification failed" in caplog.text


def test_concurrent_cycle_is_refused(make_config, tmp_path, binary, services):
    before = binary.read_bytes()
    config = make_config(FakeReleaseSource(version="1.2.0"), new_build_session())

    with UpdateLock(config.name, config.lock_dir):
        outcome = run_update_cycle(config)

    assert outcome.stage == "lock"
    assert outcome.error == "CycleLocked"
    assert binary.read_bytes() == before
    assert services.mutating_calls == []


def test_lock_released_after_cycle(make_config):
    config = make_config(FakeReleaseSource(version="1.1.0"))
    run_update_cycle(config)

    lock = UpdateLock(config.name, config.lock_dir)
    lock.acquire()
    assert lock.held
    lock.release()


# =====================================================================
# check()
# =====================================================================

def test_check_reports_available_update(make_config, services):
    session = new_build_session()
    result = UpdateOrchestrator(make_config(FakeReleaseSource(version="1.2.0"), session)).check()

    assert result["success"] is True
    assert result["update_available"] is True
    assert result["current_version"] == "1.1.0"
    assert result["latest_version"] == "1.2.0"
    assert session.gets == []
    assert services.calls == []


def test_check_unknown_when_unversioned(make_config):
    result = UpdateOrchestrator(make_config(FakeReleaseSource(version=None))).check()

    assert result["update_available"] is None


def test_check_reports_source_failure(make_config):
    result = UpdateOrchestrator(make_config(FakeReleaseSource(error=SourceUnavailable("rate limited")))).check()

    assert result["success"] is False
    assert "rate limited" in result["error"]


# =====================================================================
# Signals, stale state and stage attribution
# =====================================================================

def interrupt_during_copy():
    real_copy = binary_swap._copy_to_sibling

    def copy_then_interrupt(*args):
        os.kill(os.getpid(), signal.SIGINT)
        return real_copy(*args)
    return patch("binupdates.utils.binary_swap._copy_to_sibling", side_effect=copy_then_interrupt)


def test_interrupt_during_swap_waits_for_restart_and_notification(make_config, binary, services, notifier):
    handler = signal.getsignal(signal.SIGINT)
    config = make_config(FakeReleaseSource(version="1.2.0"), new_build_session())

    with interrupt_during_copy(), pytest.raises(KeyboardInterrupt):
        run_update_cycle(config)

    assert services.running is True
    assert services.mutating_calls == [("stop", "filebrowser"), ("start", "filebrowser")]
    assert binary.read_bytes() == script_bytes("1.2.0")
    assert previous_binary_path(binary) is None
    assert notifier.messages == [("filebrowser updated from 1.1.0 to 1.2.0", "info")]
    assert signal.getsignal(signal.SIGINT) is handler


def test_interrupt_during_swap_still_rolls_back(make_config, binary, notifier):
    services = FakeServiceManager(start_failures=1)
    before = binary.read_bytes()
    config = make_config(FakeReleaseSource(version="1.2.0"), new_build_session(),
                         service_manager=services)

    with interrupt_during_copy(), pytest.raises(KeyboardInterrupt):
        run_update_cycle(config)

    assert services.running is True
    assert binary.read_bytes() == before
    assert len(notifier.messages) == 1
    assert notifier.messages[0][1] == "error"


def test_lock_dir_error_is_not_reported_as_contention(make_config, services):
    with patch("binupdates.utils.orchestrator.UpdateLock.acquire",
               side_effect=PermissionError(13, "Permission denied", "/run/lock/binupdates-filebrowser.lock")):
        outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    assert outcome.stage == "lock"
    assert outcome.error == "UpdateError"
    assert "PermissionError" in outcome.reason
    assert services.calls == []


def test_stale_previous_binary_is_reported_and_replaced(make_config, binary, caplog):
    write_binary(binary.with_name("filebrowser.previous"), "0.9.0")

    with caplog.at_level(logging.WARNING, logger="binupdates"):
        outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session()))

    assert outcome.status == STATUS_UPDATED
    assert "interrupted cycle" in caplog.text
    assert previous_binary_path(binary) is None


class BrokenStatusManager(FakeServiceManager):
    def status(self, service):
        self.calls.append(("status", service))
        raise RuntimeError("dbus connection refused")


def test_status_error_before_stop_is_a_stop_failure(make_config, binary):
    services = BrokenStatusManager()
    before = binary.read_bytes()

    outcome = run_update_cycle(make_config(FakeReleaseSource(version="1.2.0"), new_build_session(),
                                           service_manager=services))

    assert outcome.stage == "stop"
    assert outcome.error == "ServiceStopFailed"
    assert services.mutating_calls == []
    assert binary.read_bytes() == before
