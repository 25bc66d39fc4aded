"""Background service that runs backup sessions and records liveness."""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..auth.credentials import CredentialStore
from ..config.settings import BackupConfig, SessionRequest
from ..sync import events
from ..sync.backup_session import BackupSession, ClientFactory, SessionResult
from ..utils.session_log import SessionRecorder

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "service_state.json"


class BackupLauncher:
    """Starts and stops backup sessions on a worker thread.

    At most one session runs at a time. Once the service is started (by
    ``start_service`` or the first ``start``), a heartbeat thread writes the
    current time to ``service_state.json`` every ``heartbeat_interval``
    seconds, whether or not a session is active.
    """

    def __init__(self, config: BackupConfig, credential_store: CredentialStore,
                 channel: Optional[events.EventChannel] = None,
                 client_factory: Optional[ClientFactory] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.credential_store = credential_store
        self.channel = channel or events.EventChannel()
        self.client_factory = client_factory
        self.sleep = sleep
        self.recorder = SessionRecorder(config.log_level)

        self._lock = threading.Lock()
        self._session: Optional[BackupSession] = None
        self._worker: Optional[threading.Thread] = None
        self._last_result: Optional[SessionResult] = None

        self._state_lock = threading.Lock()
        self._service_lock = threading.Lock()
        self._service_running = threading.Event()
        self._heartbeat_wakeup = threading.Event()
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._last_heartbeat = 0

    @property
    def state_file(self) -> Path:
        return Path(self.config.state_dir) / STATE_FILE_NAME

    @property
    def is_running(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    @property
    def last_heartbeat(self) -> int:
        """Epoch milliseconds of the last heartbeat, falling back to the state file."""
        if self._last_heartbeat:
            return self._last_heartbeat
        return int(self._read_state().get("service_heartbeat", 0))

    @property
    def last_result(self) -> Optional[SessionResult]:
        return self._last_result

    def start(self, root_path: str, max_size_mb: int, reverify: bool = False,
              device_id: Optional[str] = None) -> bool:
        """Start a backup session in the background.

        Returns:
            False if a session is already running (the request is ignored)
        """
        with self._lock:
            if self.is_running:
                logger.warning("Backup already running, ignoring start request")
                return False

            request = SessionRequest(root_path=root_path, max_file_size_mb=max_size_mb,
                                     reverify=reverify, device_id=device_id)
            self.start_service()
            self._write_state(user_stopped=False)
            self.channel.reset()
            self._session = BackupSession(
                request, self.config, self.credential_store,
                channel=self.channel,
                recorder=self.recorder,
                client_factory=self.client_factory,
                sleep=self.sleep,
            )
            self._worker = threading.Thread(target=self._run_session, args=(self._session,),
                                            name="backup-session", daemon=True)
            self._worker.start()
            logger.info(f"🚀 Backup session started for {root_path}")
            return True

    def _run_session(self, session: BackupSession) -> None:
        try:
            self._last_result = session.run()
        except Exception:
            logger.exception("Backup session thread crashed")

    def stop(self) -> None:
        """Request cooperative cancellation of the running session."""
        session = self._session
        self._write_state(user_stopped=True)
        if session is None or not self.is_running:
            return
        session.cancel()
        self.recorder.log("ACTION_STOP received, user cancelled")
        self.channel.emit(events.native_complete(
            session.counters.processed, session.total, "Cancelled by user"))

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionResult]:
        """Block until the current session finishes (or ``timeout`` elapses)."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return self._last_result

    def shutdown(self) -> None:
        """Stop any session and the heartbeat."""
        self.stop()
        self.wait()
        self._service_running.clear()
        self._heartbeat_wakeup.set()
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=5)
            self._heartbeat_thread = None

    def start_service(self) -> None:
        """Start the heartbeat thread. Safe to call more than once."""
        with self._service_lock:
            if self._service_running.is_set():
                return
            self._service_running.set()
            self._heartbeat_wakeup.clear()
            self._heartbeat_thread = threading.Thread(target=self._heartbeat_loop,
                                                      name="backup-heartbeat", daemon=True)
            self._heartbeat_thread.start()
        logger.debug("Heartbeat started")

    def _heartbeat_loop(self) -> None:
        while self._service_running.is_set():
            self.beat()
            self._heartbeat_wakeup.wait(self.config.heartbeat_interval)

    def beat(self) -> int:
        """Record one heartbeat now."""
        self._last_heartbeat = int(time.time() * 1000)
        try:
            self._write_state(service_heartbeat=self._last_heartbeat)
        except OSError as e:
            logger.warning(f"Could not record heartbeat: {e}")
        return self._last_heartbeat

    def was_user_stopped(self) -> bool:
        return bool(self._read_state().get("user_stopped", False))

    def _read_state(self) -> Dict[str, Any]:
        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError):
            return {}

    def _write_state(self, **values: Any) -> None:
        with self._state_lock:
            state = self._read_state()
            state.update(values)
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.state_file.with_suffix(".tmp")
            with open(tmp_file, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=2)
            os.replace(tmp_file, self.state_file)
