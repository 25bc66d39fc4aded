"""Shared fixtures: an in-memory drive, a credential store and an event collector."""

import hashlib
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Allow running the tests without installing the package
src_path = Path(__file__).parent.parent / 'src'
if src_path.exists():
    sys.path.insert(0, str(src_path))

from drive_backup.config.settings import BackupConfig, UploadOptions  # noqa: E402
from drive_backup.exceptions import RemoteAPIError  # noqa: E402
from drive_backup.remote.drive_api import ChunkResult, CloudStorageAPI, RemoteEntry  # noqa: E402
from drive_backup.sync.events import EventChannel  # noqa: E402

ROOT_PARENT = "root"


class FakeDriveAPI(CloudStorageAPI):
    """In-memory drive that speaks the resumable upload protocol.

    Failures are scripted through the public attributes:
    ``chunk_script`` (statuses or exceptions returned by the next chunk PUTs),
    ``initiate_errors``, ``probe_results``, ``accept_limit`` (max bytes the
    server persists per chunk), ``persist_on_error``, ``fail_listing_after``,
    ``omit_file_id`` (completion answers carry no file id) and ``metadata_error``.
    """

    def __init__(self):
        self.folders: Dict[str, Dict] = {}
        self.files: Dict[str, Dict] = {}
        self.uploads: Dict[str, Dict] = {}
        self._ids = 0

        self.page_size = 1000
        self.chunk_script: List = []
        self.initiate_errors: List[Exception] = []
        self.probe_results: List = []
        self.probe_gate = None
        self.accept_limit: Optional[int] = None
        self.persist_on_error = False
        self.fail_listing_after: Optional[int] = None
        self.fail_create: set = set()
        self.report_wrong_size = False
        self.omit_file_id = False
        self.metadata_error: Optional[Exception] = None

        self.chunk_log: List = []  # (start, bytes persisted before the PUT)
        self.initiated: List[str] = []
        self.created_folders: List[str] = []
        self.list_calls: List[str] = []
        self.probe_calls = 0
        self.metadata_calls = 0

    def _new_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}-{self._ids}"

    # helpers for arranging remote state

    def add_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        folder_id = self._new_id("folder")
        self.folders[folder_id] = {"name": name, "parent": parent_id or ROOT_PARENT}
        return folder_id

    def add_file(self, name: str, parent_id: str, content: bytes = b"", with_hash: bool = True) -> str:
        file_id = self._new_id("file")
        self.files[file_id] = {
            "name": name,
            "parent": parent_id,
            "data": bytes(content),
            "md5": hashlib.md5(content).hexdigest() if with_hash else None,
        }
        return file_id

    def files_named(self, name: str) -> List[Dict]:
        return [f for f in self.files.values() if f["name"] == name]

    def folder_path_id(self, *names: str) -> Optional[str]:
        parent = ROOT_PARENT
        for name in names:
            match = [fid for fid, f in self.folders.items() if f["name"] == name and f["parent"] == parent]
            if not match:
                return None
            parent = match[0]
        return parent

    # CloudStorageAPI

    def list_children(self, parent_id, page_token=None):
        self.list_calls.append(parent_id)
        offset = int(page_token or 0)
        if self.fail_listing_after is not None and offset // self.page_size >= self.fail_listing_after:
            raise RemoteAPIError("List failed", 500, "backend error")

        children = [RemoteEntry(fid, f["name"], is_folder=True)
                    for fid, f in self.folders.items() if f["parent"] == parent_id]
        children += [RemoteEntry(fid, f["name"], len(f["data"]), f["md5"])
                     for fid, f in self.files.items() if f["parent"] == parent_id]
        page = children[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        return page, str(next_offset) if next_offset < len(children) else None

    def find_folder(self, name, parent_id):
        parent = parent_id or ROOT_PARENT
        for fid, f in self.folders.items():
            if f["name"] == name and f["parent"] == parent:
                return fid
        return None

    def create_folder(self, name, parent_id=None):
        if name in self.fail_create:
            raise RemoteAPIError(f"Create folder '{name}' failed", 403, "forbidden")
        self.created_folders.append(name)
        return self.add_folder(name, parent_id)

    def find_file(self, name, parent_id):
        for fid, f in self.files.items():
            if f["name"] == name and f["parent"] == parent_id:
                return fid
        return None

    def initiate_resumable_upload(self, name, parent_id, existing_id, size):
        if self.initiate_errors:
            raise self.initiate_errors.pop(0)
        self.initiated.append(name)
        uri = self._new_id("https://upload.example/session")
        self.uploads[uri] = {"name": name, "parent": parent_id, "existing_id": existing_id,
                             "size": size, "data": bytearray(), "file_id": None}
        return uri

    def put_chunk(self, session_uri, start, data, total):
        upload = self.uploads[session_uri]
        self.chunk_log.append((start, len(upload["data"])))
        if self.chunk_script:
            scripted = self.chunk_script.pop(0)
            if isinstance(scripted, Exception):
                raise scripted
            if self.persist_on_error:
                self._store(upload, start, data)
            return ChunkResult(status=scripted, body="backend error")

        self._store(upload, start, data)
        if len(upload["data"]) >= total:
            file_id = self._finalize(upload)
            return ChunkResult(status=200, file_id=None if self.omit_file_id else file_id)
        return ChunkResult(status=308, received=len(upload["data"]))

    def _store(self, upload, start, data):
        if self.accept_limit is not None:
            data = data[:self.accept_limit]
        buffer = upload["data"]
        del buffer[start:]
        buffer.extend(data)

    def _finalize(self, upload) -> str:
        content = bytes(upload["data"])
        file_id = upload["existing_id"] or self._new_id("file")
        parent = self.files[file_id]["parent"] if file_id in self.files else upload["parent"]
        self.files[file_id] = {"name": upload["name"], "parent": parent, "data": content,
                               "md5": hashlib.md5(content).hexdigest()}
        upload["file_id"] = file_id
        return file_id

    def query_upload_offset(self, session_uri, total):
        upload = self.uploads[session_uri]
        if upload["file_id"]:
            return total
        return len(upload["data"])

    def get_metadata(self, file_id):
        self.metadata_calls += 1
        if self.metadata_error is not None:
            raise self.metadata_error
        f = self.files[file_id]
        size = len(f["data"]) + (1 if self.report_wrong_size else 0)
        return {"id": file_id, "name": f["name"], "size": size, "md5": f["md5"]}

    def probe(self):
        self.probe_calls += 1
        if self.probe_gate is not None:
            self.probe_gate.wait(5)
        if self.probe_results:
            result = self.probe_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return 200


class FakeCredentialStore:
    """Credential store backed by a dict; tests change ``headers`` to simulate a sign-in."""

    def __init__(self, headers=None):
        self.headers = dict(headers) if headers is not None else {"Authorization": "Bearer test-token"}
        self.load_calls = 0

    def load(self):
        self.load_calls += 1
        return dict(self.headers)

    def save(self, headers):
        self.headers = dict(headers)


class EventCollector:
    """Observer that records every event it receives."""

    def __init__(self):
        self.events: List[Dict] = []

    def __call__(self, event):
        self.events.append(event)

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]

    def of_type(self, event_type: str) -> List[Dict]:
        return [e for e in self.events if e["type"] == event_type]


class SleepRecorder:
    """Drop-in for ``time.sleep`` that records delays instead of sleeping."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_api():
    return FakeDriveAPI()


@pytest.fixture
def credential_store():
    return FakeCredentialStore()


@pytest.fixture
def collector():
    return EventCollector()


@pytest.fixture
def channel(collector):
    channel = EventChannel()
    channel.subscribe(collector)
    return channel


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def config(tmp_path):
    return BackupConfig(state_dir=tmp_path / "state", device_id="test-device",
                        heartbeat_interval=0.05, upload=UploadOptions())


@pytest.fixture
def backup_root(tmp_path):
    """Small tree: two files at the top level and one in a subfolder."""
    root = tmp_path / "Photos"
    (root / "2024").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"alpha")
    (root / "b.txt").write_bytes(b"bravo bravo")
    (root / "2024" / "c.jpg").write_bytes(b"charlie" * 10)
    return root


def write_file(path: Path, size: int) -> bytes:
    """Write ``size`` bytes of deterministic content to ``path``."""
    content = bytes(i % 251 for i in range(size))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return content


@pytest.fixture
def make_file():
    return write_file
