"""Resumable chunked upload of a single file.

An upload goes through initiation (find existing file, open a resumable
session), a chunk loop with per-chunk retries and server offset recovery,
and a validation step that compares the uploaded metadata with the local
file. Host-unreachable errors move into a wait-and-probe loop, socket
timeouts restart the whole upload a bounded number of times.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..auth.guard import AuthGuard
from ..config.settings import UploadOptions
from ..exceptions import (AuthError, ChunkTransportError, RemoteAPIError, TransientNetworkError,
                          TransientTimeout, UploadCancelled, UploadValidationError, truncate_body)
from ..remote.drive_api import ChunkResult
from ..utils.file_utils import FileHelper
from ..utils.session_log import SessionRecorder
from . import events
from .dedup_index import DedupIndex
from .scanner import LocalFile

logger = logging.getLogger(__name__)


@dataclass
class UploadChunkState:
    """Transient state of one file's resumable upload."""
    session_uri: str
    file_size: int
    acknowledged: int = 0  # bytes the server has confirmed
    last_status: Optional[int] = None
    file_id: Optional[str] = None


class UploadSession:
    """Uploads files one at a time over the resumable protocol."""

    def __init__(self, api, auth_guard: AuthGuard, channel: events.EventChannel,
                 recorder: Optional[SessionRecorder] = None,
                 options: Optional[UploadOptions] = None,
                 is_cancelled: Callable[[], bool] = lambda: False,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize the upload engine.

        Args:
            api: CloudStorageAPI implementation
            auth_guard: Session auth guard (refresh + failure counting)
            channel: Event channel for file_* events
            recorder: Session log
            options: Retry and chunking options
            is_cancelled: Polled before every chunk
            sleep: Sleep function (injectable for tests)
        """
        self.api = api
        self.auth_guard = auth_guard
        self.channel = channel
        self.recorder = recorder or SessionRecorder()
        self.options = options or UploadOptions()
        self.is_cancelled = is_cancelled
        self.sleep = sleep
        self.init_calls = 0

    def upload(self, local_file: LocalFile, parent_id: str,
               index: Optional[DedupIndex] = None) -> bool:
        """Upload ``local_file`` into folder ``parent_id``.

        Never raises; every failure is reported as a ``file_error`` event and
        ``False``. A cancelled upload returns ``False`` without an event, even
        when cancellation arrives while a failure is being handled.
        """
        name = local_file.name
        self.channel.emit(events.file_start(name, local_file.size))
        self.recorder.log(f"START file={name} path={local_file.relative_dir} size={local_file.size}")
        started = time.monotonic()

        try:
            state = self._upload_with_timeout_retries(local_file, parent_id)
        except UploadCancelled:
            logger.info(f"Upload cancelled for {name}")
            self.recorder.log(f"UPLOAD_CANCELLED file={name}")
            return False
        except TransientNetworkError as e:
            self.recorder.log(f"NETWORK unreachable file={name} path={local_file.relative_dir}: {e}")
            recovered = self._wait_for_network()
            reason = "Network unavailable" if not recovered else "Network interrupted"
            return self._fail(local_file, started, reason)
        except TransientTimeout as e:
            self.recorder.log(f"TIMEOUT retries exhausted file={name}: {e}")
            return self._fail(local_file, started, "Upload timed out")
        except AuthError as e:
            self.recorder.log(f"ERROR auth file={name} path={local_file.relative_dir} code={e.status} body={e.body}")
            return self._fail(local_file, started, "Authentication failed")
        except RemoteAPIError as e:
            self.recorder.log(f"ERROR api file={name} path={local_file.relative_dir} code={e.status} body={e.body}")
            return self._fail(local_file, started, f"Upload failed (HTTP {e.status})")
        except ChunkTransportError as e:
            self.recorder.log(f"CHUNK_FAIL file={name} code={e.status} range={e.content_range}")
            return self._fail(local_file, started, f"Upload failed (HTTP {e.status})")
        except UploadValidationError as e:
            self.recorder.log(f"VALIDATION_FAIL file={name} path={local_file.relative_dir}: {e}")
            return self._fail(local_file, started, str(e))
        except OSError as e:
            self.recorder.log(f"ERROR reading file={name} ex={e.__class__.__name__} msg={e}")
            return self._fail(local_file, started, f"Cannot read file: {e.strerror or e}")

        if index is not None:
            content_hash = FileHelper.compute_md5(local_file.path)
            index.record_upload(name, state.file_id, local_file.size, content_hash)

        duration_ms = int((time.monotonic() - started) * 1000)
        self.recorder.log(f"DONE file={name} path={local_file.relative_dir} durationMs={duration_ms}")
        logger.info(f"✅ Uploaded: {local_file.relative_dir}/{name}".replace("//", "/").lstrip("/"))
        self.channel.emit(events.file_done(name))
        return True

    def _fail(self, local_file: LocalFile, started: float, message: str) -> bool:
        if self.is_cancelled():
            # abandoned files are not reported as failures
            logger.info(f"Upload cancelled for {local_file.name} ({message})")
            self.recorder.log(f"UPLOAD_CANCELLED file={local_file.name}")
            return False
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.error(f"❌ Upload failed for {local_file.name}: {message}")
        self.recorder.log(f"ERROR upload failed file={local_file.name} path={local_file.relative_dir} "
                          f"durationMs={duration_ms}")
        self.channel.emit(events.file_error(local_file.name, message))
        return False

    def _upload_with_timeout_retries(self, local_file: LocalFile, parent_id: str) -> UploadChunkState:
        # a retry opens a fresh session and starts again from byte 0
        retry = 0
        while True:
            try:
                return self._upload_once(local_file, parent_id)
            except TransientTimeout as e:
                if retry >= self.options.timeout_retries:
                    raise
                delay = self.options.timeout_backoff * (2 ** retry)
                retry += 1
                self.recorder.log(f"TIMEOUT_RETRY file={local_file.name} attempt={retry} "
                                  f"backoff={delay:.0f}s: {e}")
                self.sleep(delay)
                if self.is_cancelled():
                    raise UploadCancelled(local_file.name)

    def _upload_once(self, local_file: LocalFile, parent_id: str) -> UploadChunkState:
        session_uri = self._initiate(local_file, parent_id)
        state = UploadChunkState(session_uri=session_uri, file_size=local_file.size)
        result = self._chunk_loop(local_file, state)
        self._validate(local_file, state, result)
        return state

    def _initiate(self, local_file: LocalFile, parent_id: str) -> str:
        try:
            session_uri = self._open_session(local_file, parent_id)
        except AuthError as first:
            self.recorder.log(f"AUTH 401 on initiate file={local_file.name}, refreshing and retrying once")
            self.auth_guard.refresh()
            try:
                session_uri = self._open_session(local_file, parent_id)
            except AuthError:
                self.auth_guard.record_auth_failure()
                raise
            logger.debug(f"Initiate succeeded after refresh (first error: {first})")

        self.auth_guard.record_auth_success()
        return session_uri

    def _open_session(self, local_file: LocalFile, parent_id: str) -> str:
        # an existing same-named file is updated in place instead of duplicated
        existing_id = self.api.find_file(local_file.name, parent_id)
        if existing_id:
            self.recorder.debug(f"INIT update existing file={local_file.name} id={existing_id}")
        self.init_calls += 1
        return self.api.initiate_resumable_upload(
            local_file.name, parent_id, existing_id, local_file.size)

    def _chunk_loop(self, local_file: LocalFile, state: UploadChunkState):
        chunk_index = 0
        next_milestone = 10
        with open(local_file.path, 'rb') as f:
            while True:
                if self.is_cancelled():
                    raise UploadCancelled(local_file.name)

                result = self._send_chunk(f, local_file, state)

                final = result.complete or state.acknowledged >= state.file_size
                if chunk_index % self.options.progress_every_chunks == 0 or final:
                    self.channel.emit(events.file_progress(local_file.name, state.acknowledged, state.file_size))
                pct = min(100, state.acknowledged * 100 // state.file_size) if state.file_size else 100
                if pct >= next_milestone:
                    self.recorder.log(f"CHUNK progress file={local_file.name} {pct}% "
                                      f"bytes={state.acknowledged}/{state.file_size}")
                    next_milestone = (pct // 10 + 1) * 10
                chunk_index += 1

                if result.complete:
                    return result
                if state.acknowledged >= state.file_size:
                    raise ChunkTransportError(
                        f"Server did not confirm completion of {local_file.name}",
                        result.status, f"bytes */{state.file_size}")

    def _send_chunk(self, f, local_file: LocalFile, state: UploadChunkState):
        attempt = 0
        while True:
            start = state.acknowledged
            f.seek(start)
            data = f.read(self.options.chunk_size)
            content_range = (f"bytes {start}-{start + len(data) - 1}/{state.file_size}"
                             if data else f"bytes */{state.file_size}")

            result = self.api.put_chunk(state.session_uri, start, data, state.file_size)
            state.last_status = result.status
            if result.accepted:
                received = result.received if result.received is not None else start + len(data)
                state.acknowledged = min(received, state.file_size)
                return result
            if result.complete:
                state.acknowledged = state.file_size
                state.file_id = result.file_id
                return result

            attempt += 1
            logger.warning(f"[chunk-retry] file={local_file.name} attempt={attempt} "
                           f"code={result.status} range={content_range}")
            self.recorder.log(f"CHUNK_RETRY file={local_file.name} attempt={attempt} code={result.status} "
                              f"range={content_range} body={truncate_body(result.body, 120)}")
            if attempt >= self.options.chunk_retry_attempts:
                raise ChunkTransportError(f"Chunk rejected for {local_file.name}",
                                          result.status, content_range)
            self.sleep(self.options.chunk_retry_delay * attempt)
            self._recover_offset(local_file, state)
            if state.file_size and state.acknowledged >= state.file_size:
                # the server already holds everything; completion is trusted without an id
                state.last_status = 200
                return ChunkResult(status=200)

    def _recover_offset(self, local_file: LocalFile, state: UploadChunkState) -> None:
        try:
            server_offset = self.api.query_upload_offset(state.session_uri, state.file_size)
        except RemoteAPIError as e:
            self.recorder.log(f"OFFSET_QUERY_FAIL file={local_file.name} code={e.status} "
                              f"keeping offset={state.acknowledged}")
            return
        server_offset = max(0, min(server_offset, state.file_size))
        if server_offset != state.acknowledged:
            self.recorder.log(f"OFFSET_RECONCILE file={local_file.name} local={state.acknowledged} "
                              f"server={server_offset}")
        state.acknowledged = server_offset

    def _validate(self, local_file: LocalFile, state: UploadChunkState, result) -> None:
        file_id = state.file_id or result.file_id
        if not file_id:
            self.recorder.debug(f"VALIDATE skipped (no id) file={local_file.name}")
            return
        try:
            metadata = self.api.get_metadata(file_id)
        except RemoteAPIError as e:
            self.recorder.log(f"VALIDATE metadata fetch failed file={local_file.name} code={e.status}, "
                              f"trusting completion")
            return

        if metadata.get("name") != local_file.name:
            self.recorder.log(f"VALIDATE name mismatch file={local_file.name} remote={metadata.get('name')}")
        if metadata.get("size") != local_file.size:
            raise UploadValidationError(
                f"Size mismatch after upload: local={local_file.size} remote={metadata.get('size')}")
        self.recorder.debug(f"VALIDATE ok file={local_file.name} id={file_id}")

    def _wait_for_network(self) -> bool:
        """Back off while the host is unreachable.

        Returns:
            True if the probe got any HTTP answer before attempts ran out
        """
        for attempt in range(self.options.network_wait_attempts):
            delay = min(self.options.network_wait_base * (2 ** attempt), self.options.network_wait_cap)
            self.recorder.log(f"NETWORK_WAIT attempt={attempt + 1}/{self.options.network_wait_attempts} "
                              f"delay={delay:.0f}s")
            self.sleep(delay)
            if self.is_cancelled():
                return False
            try:
                status = self.api.probe()
            except (TransientNetworkError, TransientTimeout):
                continue
            self.recorder.log(f"NETWORK back (probe status={status})")
            return True
        self.recorder.log("NETWORK still unreachable, giving up on file")
        return False
