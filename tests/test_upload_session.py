"""Tests for the resumable upload engine."""

import hashlib

import pytest

from drive_backup.auth.credentials import AuthCredential
from drive_backup.auth.guard import AuthGuard
from drive_backup.config.settings import UploadOptions
from drive_backup.exceptions import AuthError, RemoteAPIError, TransientNetworkError, TransientTimeout
from drive_backup.sync.dedup_index import DedupIndex
from drive_backup.sync.scanner import iter_files
from drive_backup.sync.upload_session import UploadSession

CHUNK = 256 * 1024


@pytest.fixture
def guard(fake_api, credential_store):
    return AuthGuard(fake_api, AuthCredential(credential_store.load()), credential_store)


@pytest.fixture
def parent(fake_api):
    return fake_api.add_folder("Photos")


@pytest.fixture
def uploader(fake_api, guard, channel, sleeper):
    return UploadSession(fake_api, guard, channel, options=UploadOptions(), sleep=sleeper)


def _local_file(tmp_path, make_file, name, size):
    make_file(tmp_path / "src" / name, size)
    return next(f for f in iter_files(tmp_path / "src", 10 * CHUNK) if f.name == name)


def _stored(fake_api, name):
    matches = fake_api.files_named(name)
    assert len(matches) == 1
    return matches[0]["data"]


def test_small_file_upload(tmp_path, make_file, fake_api, uploader, parent, collector):
    local = _local_file(tmp_path, make_file, "a.bin", 1000)
    index = DedupIndex(parent)

    assert uploader.upload(local, parent, index)

    assert _stored(fake_api, "a.bin") == local.path.read_bytes()
    assert collector.types() == ["file_start", "file_progress", "file_done"]
    assert collector.events[1]["progress"] == 1.0
    assert index.get("a.bin").content_hash == hashlib.md5(local.path.read_bytes()).hexdigest()


def test_progress_reported_every_fourth_chunk_and_at_end(tmp_path, make_file, fake_api, uploader,
                                                         parent, collector):
    local = _local_file(tmp_path, make_file, "big.bin", 6 * CHUNK + 10)

    assert uploader.upload(local, parent)

    progress = collector.of_type("file_progress")
    assert [e["uploaded"] for e in progress] == [CHUNK, 5 * CHUNK, 6 * CHUNK + 10]
    assert [start for start, _ in fake_api.chunk_log] == [i * CHUNK for i in range(7)]


def test_transient_chunk_errors_are_retried(tmp_path, make_file, fake_api, uploader, parent,
                                            collector, sleeper):
    local = _local_file(tmp_path, make_file, "c.bin", CHUNK + 100)
    fake_api.chunk_script = [500, 500]

    assert uploader.upload(local, parent)

    assert sleeper.delays == [0.5, 1.0]
    assert _stored(fake_api, "c.bin") == local.path.read_bytes()
    assert collector.of_type("file_error") == []


def test_three_failed_chunk_attempts_fail_the_file(tmp_path, make_file, fake_api, uploader, parent,
                                                   collector):
    local = _local_file(tmp_path, make_file, "d.bin", CHUNK + 100)
    fake_api.chunk_script = [500, 500, 500]

    assert not uploader.upload(local, parent)

    errors = collector.of_type("file_error")
    assert len(errors) == 1
    assert errors[0]["fileName"] == "d.bin"
    assert "500" in errors[0]["message"]
    assert fake_api.files_named("d.bin") == []


def test_resume_from_server_offset_after_error(tmp_path, make_file, fake_api, uploader, parent):
    local = _local_file(tmp_path, make_file, "e.bin", 2 * CHUNK + 100)
    fake_api.chunk_script = [503]
    fake_api.persist_on_error = True

    assert uploader.upload(local, parent)

    assert [start for start, _ in fake_api.chunk_log] == [0, CHUNK, 2 * CHUNK]
    assert _stored(fake_api, "e.bin") == local.path.read_bytes()


def test_partial_acknowledgement_never_skips_bytes(tmp_path, make_file, fake_api, uploader, parent):
    local = _local_file(tmp_path, make_file, "f.bin", CHUNK + 500)
    fake_api.accept_limit = 100 * 1024

    assert uploader.upload(local, parent)

    for start, persisted in fake_api.chunk_log:
        assert start == persisted
    assert _stored(fake_api, "f.bin") == local.path.read_bytes()


def test_existing_remote_file_is_updated_in_place(tmp_path, make_file, fake_api, uploader, parent):
    fake_api.add_file("g.bin", parent, b"old content")
    local = _local_file(tmp_path, make_file, "g.bin", 300)

    assert uploader.upload(local, parent)

    assert _stored(fake_api, "g.bin") == local.path.read_bytes()


def test_empty_file_upload(tmp_path, make_file, fake_api, uploader, parent, collector):
    local = _local_file(tmp_path, make_file, "empty.txt", 0)

    assert uploader.upload(local, parent)

    assert _stored(fake_api, "empty.txt") == b""
    assert fake_api.chunk_log == [(0, 0)]
    assert collector.types()[-1] == "file_done"


def test_cancellation_stops_without_error_event(tmp_path, make_file, fake_api, guard, channel,
                                                collector, parent, sleeper):
    local = _local_file(tmp_path, make_file, "h.bin", 3 * CHUNK)
    checks = []

    def is_cancelled():
        checks.append(1)
        return len(checks) > 1

    uploader = UploadSession(fake_api, guard, channel, is_cancelled=is_cancelled, sleep=sleeper)

    assert not uploader.upload(local, parent)

    assert len(fake_api.chunk_log) == 1
    assert collector.of_type("file_error") == []
    assert collector.of_type("file_done") == []


def test_size_mismatch_after_upload_fails(tmp_path, make_file, fake_api, uploader, parent, collector):
    local = _local_file(tmp_path, make_file, "i.bin", 100)
    fake_api.report_wrong_size = True

    assert not uploader.upload(local, parent)

    assert "Size mismatch" in collector.of_type("file_error")[0]["message"]


def test_timeout_restarts_upload_from_scratch(tmp_path, make_file, fake_api, uploader, parent, sleeper):
    local = _local_file(tmp_path, make_file, "j.bin", 2 * CHUNK)
    fake_api.chunk_script = [308, TransientTimeout("read timed out")]
    fake_api.persist_on_error = True

    assert uploader.upload(local, parent)

    assert uploader.init_calls == 2
    assert sleeper.delays == [1.0]
    starts = [start for start, _ in fake_api.chunk_log]
    assert starts[2] == 0


def test_timeout_retries_are_bounded(tmp_path, make_file, fake_api, uploader, parent, collector, sleeper):
    local = _local_file(tmp_path, make_file, "k.bin", 100)
    fake_api.chunk_script = [TransientTimeout("timed out") for _ in range(4)]

    assert not uploader.upload(local, parent)

    assert sleeper.delays == [1.0, 2.0, 4.0]
    assert uploader.init_calls == 4
    assert collector.of_type("file_error")[0]["message"] == "Upload timed out"


def test_unreachable_host_waits_for_network(tmp_path, make_file, fake_api, uploader, parent,
                                            collector, sleeper):
    local = _local_file(tmp_path, make_file, "l.bin", 100)
    fake_api.chunk_script = [TransientNetworkError("no route")]
    fake_api.probe_results = [TransientNetworkError("still down"), 200]

    assert not uploader.upload(local, parent)

    assert sleeper.delays == [2.0, 4.0]
    assert collector.of_type("file_error")[0]["message"] == "Network interrupted"


def test_network_wait_gives_up(tmp_path, make_file, fake_api, uploader, parent, collector, sleeper):
    local = _local_file(tmp_path, make_file, "m.bin", 100)
    fake_api.chunk_script = [TransientNetworkError("no route")]
    fake_api.probe_results = [TransientNetworkError("down") for _ in range(5)]

    assert not uploader.upload(local, parent)

    assert sleeper.delays == [2.0, 4.0, 8.0, 16.0, 30.0]
    assert collector.of_type("file_error")[0]["message"] == "Network unavailable"


def test_auth_error_on_initiate_is_retried_once(tmp_path, make_file, fake_api, uploader, guard, parent,
                                                credential_store):
    local = _local_file(tmp_path, make_file, "n.bin", 100)
    fake_api.initiate_errors = [AuthError("unauthorized", 401)]
    credential_store.headers = {"Authorization": "Bearer fresh"}

    assert uploader.upload(local, parent)

    assert guard.credential.headers["Authorization"] == "Bearer fresh"
    assert guard.consecutive_failures == 0


def test_repeated_auth_error_counts_a_failure(tmp_path, make_file, fake_api, uploader, guard, parent,
                                              collector):
    local = _local_file(tmp_path, make_file, "o.bin", 100)
    fake_api.initiate_errors = [AuthError("unauthorized", 401), AuthError("unauthorized", 401)]

    assert not uploader.upload(local, parent)

    assert guard.consecutive_failures == 1
    assert collector.of_type("file_error")[0]["message"] == "Authentication failed"


def test_cancel_during_network_wait_emits_no_error(tmp_path, make_file, fake_api, guard, channel,
                                                   collector, parent):
    local = _local_file(tmp_path, make_file, "p.bin", 100)
    fake_api.chunk_script = [TransientNetworkError("no route")]
    cancelled = []

    def sleep_then_cancel(seconds):
        cancelled.append(seconds)

    uploader = UploadSession(fake_api, guard, channel, is_cancelled=lambda: bool(cancelled),
                             sleep=sleep_then_cancel)

    assert not uploader.upload(local, parent)

    assert cancelled == [2.0]
    assert fake_api.probe_calls == 0
    assert collector.of_type("file_error") == []
    assert any("UPLOAD_CANCELLED file=p.bin" in line for line in uploader.recorder.lines())


def test_auth_answer_during_network_wait_counts_as_reconnect(tmp_path, make_file, fake_api, uploader,
                                                            parent, collector, sleeper):
    local = _local_file(tmp_path, make_file, "q.bin", 100)
    fake_api.chunk_script = [TransientNetworkError("no route")]
    fake_api.probe_results = [401]

    assert not uploader.upload(local, parent)

    assert sleeper.delays == [2.0]
    assert collector.of_type("file_error")[0]["message"] == "Network interrupted"


def test_progress_milestones_logged_every_ten_percent(tmp_path, make_file, fake_api, uploader, parent):
    local = _local_file(tmp_path, make_file, "r.bin", 10 * CHUNK)

    assert uploader.upload(local, parent)

    milestones = [line.split(" | ")[2] for line in uploader.recorder.lines() if "CHUNK progress" in line]
    assert milestones == [f"CHUNK progress file=r.bin {pct}% bytes={pct * CHUNK // 10}/{10 * CHUNK}"
                          for pct in range(10, 101, 10)]


def test_completion_without_file_id_skips_validation(tmp_path, make_file, fake_api, uploader, parent,
                                                     collector):
    local = _local_file(tmp_path, make_file, "s.bin", 500)
    fake_api.omit_file_id = True
    fake_api.report_wrong_size = True

    assert uploader.upload(local, parent)

    assert fake_api.metadata_calls == 0
    assert collector.types()[-1] == "file_done"


def test_metadata_fetch_error_trusts_completion(tmp_path, make_file, fake_api, uploader, parent, collector):
    local = _local_file(tmp_path, make_file, "t.bin", 500)
    fake_api.metadata_error = RemoteAPIError("metadata unavailable", 503, "backend error")

    assert uploader.upload(local, parent)

    assert fake_api.metadata_calls == 1
    assert collector.of_type("file_error") == []
    assert collector.types()[-1] == "file_done"
