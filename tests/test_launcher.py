"""Tests for the background launcher and its heartbeat."""

import json
import threading
import time

import pytest

from drive_backup.service.launcher import BackupLauncher
from drive_backup.sync.backup_session import SessionState


@pytest.fixture
def launcher(config, credential_store, fake_api):
    launcher = BackupLauncher(config, credential_store,
                              client_factory=lambda credential: fake_api,
                              sleep=lambda seconds: None)
    yield launcher
    launcher.shutdown()


def _read_state(launcher):
    return json.loads(launcher.state_file.read_text(encoding="utf-8"))


def test_session_runs_in_background(launcher, backup_root, collector):
    launcher.channel.subscribe(collector)

    assert launcher.start(str(backup_root), 1, device_id="dev")
    result = launcher.wait(10)

    assert result.status == "ok"
    assert result.counters.uploaded == 3
    assert not launcher.is_running
    assert collector.types()[-1] == "native_summary"


def test_second_start_is_ignored_while_running(launcher, backup_root, fake_api):
    fake_api.probe_gate = threading.Event()

    assert launcher.start(str(backup_root), 1)
    assert not launcher.start(str(backup_root), 1)

    fake_api.probe_gate.set()
    assert launcher.wait(10).state is SessionState.COMPLETED
    assert launcher.start(str(backup_root), 1)
    launcher.wait(10)


def test_stop_cancels_and_records_user_stop(launcher, backup_root, fake_api, collector):
    fake_api.probe_gate = threading.Event()
    launcher.channel.subscribe(collector)
    launcher.start(str(backup_root), 1)

    launcher.stop()
    fake_api.probe_gate.set()
    result = launcher.wait(10)

    assert result.state is SessionState.CANCELLED
    assert result.status == "cancelled"
    assert launcher.was_user_stopped()
    assert collector.of_type("native_complete")[0]["status"] == "Cancelled by user"
    assert collector.of_type("file_start") == []


def test_start_clears_user_stop_flag(launcher, backup_root):
    launcher.stop()
    assert launcher.was_user_stopped()

    launcher.start(str(backup_root), 1)
    assert not launcher.was_user_stopped()
    launcher.wait(10)


def test_heartbeat_is_written_while_running(launcher, backup_root, config, credential_store):
    launcher.start(str(backup_root), 1)
    launcher.wait(10)

    deadline = time.monotonic() + 5
    while "service_heartbeat" not in _read_state(launcher) and time.monotonic() < deadline:
        time.sleep(0.01)

    stamp = _read_state(launcher)["service_heartbeat"]
    assert stamp > 0
    assert launcher.last_heartbeat >= stamp

    other = BackupLauncher(config, credential_store)
    assert other.last_heartbeat > 0


def test_shutdown_stops_heartbeat(launcher, backup_root):
    launcher.start(str(backup_root), 1)
    launcher.wait(10)
    launcher.shutdown()

    assert not any(t.name == "backup-heartbeat" and t.is_alive() for t in threading.enumerate())

    stamp = launcher.beat()
    assert _read_state(launcher)["service_heartbeat"] == stamp


def test_heartbeat_runs_without_a_session(launcher):
    launcher.start_service()
    thread = launcher._heartbeat_thread
    launcher.start_service()
    assert launcher._heartbeat_thread is thread

    deadline = time.monotonic() + 5
    while not launcher.state_file.exists() and time.monotonic() < deadline:
        time.sleep(0.01)

    assert _read_state(launcher)["service_heartbeat"] > 0
    assert not launcher.is_running
    assert launcher.last_result is None
