"""Backup session orchestrating scan, preflight, folder setup and uploads."""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..auth.credentials import AuthCredential, CredentialStore
from ..auth.guard import AuthGuard
from ..config.settings import BackupConfig, SessionRequest
from ..exceptions import (AuthPreflightError, ConfigError, FolderResolutionError,
                          RemoteAPIError, TransientNetworkError, TransientTimeout)
from ..remote.drive_api import CloudStorageAPI, DriveAPI
from ..utils.logging import TimedOperation
from ..utils.session_log import SESSION_LOG_PREFIX, SessionRecorder
from . import events
from .dedup_index import HASH_MATCH_REASON, SIZE_MATCH_REASON, DedupCatalog, SkipDecision
from .folder_resolver import RemoteFolderResolver, get_or_create_folder
from .scanner import LocalFile, count_files, iter_files
from .upload_session import UploadSession

# Module logger
logger = logging.getLogger(__name__)

ClientFactory = Callable[[AuthCredential], CloudStorageAPI]


class SessionState(str, Enum):
    """Lifecycle of a backup session."""
    IDLE = "idle"
    SCANNING = "scanning"
    AUTH_PREFLIGHT = "auth_preflight"
    BUILDING_ROOT = "building_root"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    AUTH_ABORTED = "auth_aborted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class SessionCounters:
    processed: int = 0
    uploaded: int = 0
    skipped_hash: int = 0
    skipped_size: int = 0
    errors: int = 0
    bytes_uploaded: int = 0


@dataclass
class SessionResult:
    """Outcome of one backup session."""
    state: SessionState
    status: str
    total: int = 0
    counters: SessionCounters = field(default_factory=SessionCounters)
    duration_ms: int = 0
    log_file: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self):
        data = asdict(self)
        data["state"] = self.state.value
        return data


def default_client_factory(config: BackupConfig) -> ClientFactory:
    """Build DriveAPI clients configured from ``config``."""
    def factory(credential: AuthCredential) -> CloudStorageAPI:
        return DriveAPI(credential, base_url=config.api_base_url,
                        upload_url=config.upload_base_url, timeout=config.request_timeout)
    return factory


class BackupSession:
    """One run of the backup engine.

    State machine: IDLE → SCANNING → AUTH_PREFLIGHT → BUILDING_ROOT →
    UPLOADING → COMPLETED | AUTH_ABORTED | CANCELLED | FAILED. Files are
    processed strictly one at a time; cancellation is observed before each
    file and before each chunk.
    """

    def __init__(self, request: SessionRequest, config: BackupConfig,
                 credential_store: CredentialStore,
                 channel: Optional[events.EventChannel] = None,
                 recorder: Optional[SessionRecorder] = None,
                 client_factory: Optional[ClientFactory] = None,
                 cancel_event: Optional[threading.Event] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize a backup session.

        Args:
            request: Root path, size limit, reverify flag and device id
            config: Application configuration
            credential_store: Source of auth headers
            channel: Event channel to the observer
            recorder: Session log
            client_factory: Builds the storage API client from the credential cell
            cancel_event: Set by the launcher to stop the session
            sleep: Sleep function used for backoff (injectable for tests)
        """
        self.request = request
        self.config = config
        self.credential_store = credential_store
        self.channel = channel or events.EventChannel()
        self.recorder = recorder or SessionRecorder(config.log_level)
        self.client_factory = client_factory or default_client_factory(config)
        self.cancel_event = cancel_event or threading.Event()
        self.sleep = sleep

        self.state = SessionState.IDLE
        self.counters = SessionCounters()
        self.total = 0
        self.auth_guard: Optional[AuthGuard] = None
        self._run_lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def auth_aborted(self) -> bool:
        return self.auth_guard is not None and self.auth_guard.aborted

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self) -> SessionResult:
        """Run the session to a terminal state.

        Returns:
            SessionResult; never raises for backup failures
        """
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("Backup session is already running")
        try:
            return self._run()
        finally:
            self._run_lock.release()

    def _run(self) -> SessionResult:
        started = time.monotonic()
        self.recorder.clear()
        self.recorder.log(f"Backup session started root={self.request.root_path} "
                          f"maxSizeMB={self.request.max_file_size_mb} reverify={self.request.reverify} "
                          f"device={self.request.device_id}")
        error_message = None

        with TimedOperation(logger, f"backup session for {self.request.root_path}"):
            try:
                self._execute()
            except ConfigError as e:
                error_message = str(e)
                self._session_error("ERROR config", e)
                self.state = SessionState.FAILED
            except AuthPreflightError as e:
                error_message = str(e)
                self._session_error("ERROR auth preflight", e)
                self.state = SessionState.AUTH_ABORTED
            except FolderResolutionError as e:
                error_message = str(e)
                self._session_error("ERROR root folder", e)
                self.state = SessionState.FAILED
            except (RemoteAPIError, TransientNetworkError, TransientTimeout) as e:
                error_message = str(e)
                self._session_error("ERROR remote", e)
                self.state = SessionState.FAILED
            except Exception as e:
                logger.exception("Unexpected error in backup session")
                error_message = str(e) or e.__class__.__name__
                self._session_error(f"ERROR exception {e.__class__.__name__}", e)
                self.state = SessionState.FAILED

        return self._finish(started, error_message)

    def _session_error(self, prefix: str, error: BaseException) -> None:
        logger.error(f"Backup session failed: {error}")
        self.recorder.log(f"{prefix}: {error}")
        self.channel.emit(events.error(str(error) or error.__class__.__name__))

    def _execute(self) -> None:
        self.state = SessionState.SCANNING
        root = Path(self.request.root_path)
        if not root.is_dir():
            raise ConfigError("Folder not found")

        headers = self.credential_store.load()
        if not headers:
            raise ConfigError("Auth headers not set")
        credential = AuthCredential(headers)
        api = self.client_factory(credential)

        self.state = SessionState.AUTH_PREFLIGHT
        self.auth_guard = AuthGuard(api, credential, self.credential_store,
                                    threshold=self.config.upload.auth_failure_threshold,
                                    recorder=self.recorder)
        self.auth_guard.preflight()

        max_bytes = self.request.max_size_bytes
        self.total = count_files(root, max_bytes)
        self.recorder.log(f"Scan complete totalFiles={self.total}")
        self.channel.emit(events.scan_complete(self.total))
        self.channel.emit(events.native_progress(0, self.total, f"Starting backup 0/{self.total}"))

        self.state = SessionState.BUILDING_ROOT
        device_root = f"AppBackup_{self.request.device_id or 'unknown'}"
        try:
            app_backup_id = get_or_create_folder(api, device_root, None)
        except FolderResolutionError as e:
            raise FolderResolutionError(f"Failed to create backup folder: {e}") from e
        try:
            target_id = get_or_create_folder(api, root.name, app_backup_id)
        except FolderResolutionError as e:
            raise FolderResolutionError(f"Failed to create target folder: {e}") from e
        self.recorder.log(f"Target root Drive folder id={target_id} name={root.name}")

        catalog = DedupCatalog(api, self.config.cache_dir, self.request.reverify, self.recorder)
        catalog.load_root(target_id)
        resolver = RemoteFolderResolver(api, target_id, self.recorder)
        uploader = UploadSession(api, self.auth_guard, self.channel, self.recorder,
                                 options=self.config.upload,
                                 is_cancelled=lambda: self.cancelled,
                                 sleep=self.sleep)

        self.state = SessionState.UPLOADING
        for local_file in iter_files(root, max_bytes):
            if self.cancelled:
                self.recorder.log(f"CANCELLED processed={self.counters.processed}/{self.total}")
                break
            if self.auth_aborted:
                self.recorder.log(f"AUTH_ABORT remaining files skipped processed={self.counters.processed}/{self.total}")
                break
            self._process_file(local_file, resolver, catalog, uploader)

        if self.cancelled:
            self.state = SessionState.CANCELLED
        elif self.auth_aborted:
            self.state = SessionState.AUTH_ABORTED
        else:
            self.state = SessionState.COMPLETED

    def _process_file(self, local_file: LocalFile, resolver: RemoteFolderResolver,
                      catalog: DedupCatalog, uploader: UploadSession) -> None:
        name = local_file.name
        try:
            folder_id = resolver.ensure_path(local_file.relative_dir)
            index = catalog.for_folder(folder_id, local_file.relative_dir)
        except (FolderResolutionError, TransientNetworkError, TransientTimeout) as e:
            self.recorder.log(f"ERROR could not create remote path '{local_file.relative_dir}' "
                              f"for file {name}: {e}")
            self.counters.errors += 1
            self.counters.processed += 1
            self.channel.emit(events.file_error(name, f"Remote folder unavailable: {e}"))
            self._emit_progress("Uploading")
            return

        decision, local_md5 = index.decide(local_file)
        if decision is SkipDecision.HASH_MATCH:
            self.counters.skipped_hash += 1
            self.counters.processed += 1
            self.recorder.log(f"SKIP hash+size match file={name} path={local_file.relative_dir} "
                              f"size={local_file.size} md5={local_md5}")
            self.channel.emit(events.file_skipped(name, HASH_MATCH_REASON))
            self._emit_progress("Skipping")
            return
        if decision is SkipDecision.SIZE_MATCH:
            self.counters.skipped_size += 1
            self.counters.processed += 1
            self.recorder.log(f"SKIP size match (no hash) file={name} path={local_file.relative_dir} "
                              f"size={local_file.size}")
            self.channel.emit(events.file_skipped(name, SIZE_MATCH_REASON))
            self._emit_progress("Skipping")
            return

        uploaded = uploader.upload(local_file, folder_id, index)
        if not uploaded and self.cancelled:
            # abandoned mid-upload; not counted
            return
        if uploaded:
            self.counters.uploaded += 1
            self.counters.bytes_uploaded += local_file.size
        else:
            self.counters.errors += 1
        self.counters.processed += 1
        self._emit_progress("Uploading")

    def _emit_progress(self, verb: str) -> None:
        processed, total = self.counters.processed, self.total
        self.channel.emit(events.native_progress(processed, total, f"{verb} {processed}/{total}"))

    def status_suffix(self) -> str:
        if self.state is SessionState.CANCELLED:
            return "cancelled"
        if self.state is SessionState.AUTH_ABORTED:
            return "auth"
        if self.state is SessionState.FAILED:
            return f"err{max(self.counters.errors, 1)}"
        if self.counters.errors > 0:
            return f"err{self.counters.errors}"
        return "ok"

    def _finish(self, started: float, error_message: Optional[str]) -> SessionResult:
        c = self.counters
        duration_ms = int((time.monotonic() - started) * 1000)
        if self.state is SessionState.COMPLETED:
            self.channel.emit(events.native_complete(
                c.processed, self.total, f"Backup complete ({c.processed}/{self.total})"))
        elif self.state is SessionState.AUTH_ABORTED:
            self.channel.emit(events.native_complete(
                c.processed, self.total, "Backup stopped: sign in again"))
        elif self.state is SessionState.FAILED:
            self.channel.emit(events.native_complete(
                c.processed, self.total, f"Backup failed: {error_message}"))

        logger.info(f"[complete] processed={c.processed}/{self.total} uploaded={c.uploaded} "
                    f"skippedHash={c.skipped_hash} skippedSize={c.skipped_size} errors={c.errors} "
                    f"bytes={c.bytes_uploaded}")
        self.recorder.log(f"SUMMARY processed={c.processed} uploaded={c.uploaded} "
                          f"skippedHash={c.skipped_hash} skippedSize={c.skipped_size} errors={c.errors} "
                          f"bytes={c.bytes_uploaded} durationMs={duration_ms} "
                          f"userCancelled={self.state is SessionState.CANCELLED} state={self.state.value}")

        status = self.status_suffix()
        log_name = f"{SESSION_LOG_PREFIX}{int(time.time() * 1000)}_{status}.txt"
        saved_name = None
        try:
            saved_name = self.recorder.persist(self.config.session_log_dir, log_name)
            logger.info(f"Session log saved as {saved_name}")
        except OSError as e:
            logger.error(f"Failed to persist session log {log_name}: {e}")

        self.channel.emit(events.native_summary(
            c.uploaded, c.skipped_hash, c.skipped_size, c.errors, c.bytes_uploaded, duration_ms))

        return SessionResult(
            state=self.state,
            status=status,
            total=self.total,
            counters=c,
            duration_ms=duration_ms,
            log_file=saved_name,
            error=error_message,
        )
