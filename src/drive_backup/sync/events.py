"""Event channel between a backup session and its observer.

Events are plain dicts with a ``type`` key. One subscriber is attached at a
time. The latest ``scan_complete`` and ``native_progress`` events are kept
and replayed when a subscriber attaches; all other events are dropped when
nobody is listening.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
Observer = Callable[[Event], None]

DURABLE_EVENT_TYPES = ("scan_complete", "native_progress")


class EventChannel:
    """Publish/subscribe channel owned by the launcher."""

    def __init__(self):
        self._subscriber: Optional[Observer] = None
        self._durable: Dict[str, Event] = {}
        self._lock = threading.Lock()

    def subscribe(self, observer: Observer) -> None:
        """Attach ``observer``, replacing any previous one, and replay durable events."""
        with self._lock:
            self._subscriber = observer
            replay = [self._durable[t] for t in DURABLE_EVENT_TYPES if t in self._durable]
        for event in replay:
            self._deliver(observer, event)

    def unsubscribe(self, observer: Optional[Observer] = None) -> None:
        with self._lock:
            if observer is None or self._subscriber is observer:
                self._subscriber = None

    def emit(self, event: Event) -> None:
        with self._lock:
            if event.get("type") in DURABLE_EVENT_TYPES:
                self._durable[event["type"]] = event
            observer = self._subscriber
        if observer is not None:
            self._deliver(observer, event)

    def reset(self) -> None:
        """Forget replayable events from a previous session."""
        with self._lock:
            self._durable.clear()

    @staticmethod
    def _deliver(observer: Observer, event: Event) -> None:
        try:
            observer(event)
        except Exception as e:
            logger.warning(f"Observer failed on {event.get('type')} event: {e}")


def scan_complete(total: int) -> Event:
    return {"type": "scan_complete", "total": total, "processed": 0}


def native_progress(processed: int, total: int, status: str) -> Event:
    return {"type": "native_progress", "processed": processed, "total": total, "status": status}


def file_start(file_name: str, file_size: int) -> Event:
    return {"type": "file_start", "fileName": file_name, "fileSize": file_size}


def file_progress(file_name: str, uploaded: int, total: int) -> Event:
    progress = uploaded / total if total else 1.0
    return {"type": "file_progress", "fileName": file_name, "progress": progress,
            "uploaded": uploaded, "total": total}


def file_skipped(file_name: str, reason: str) -> Event:
    return {"type": "file_skipped", "fileName": file_name, "reason": reason}


def file_done(file_name: str) -> Event:
    return {"type": "file_done", "fileName": file_name}


def file_error(file_name: str, message: str) -> Event:
    return {"type": "file_error", "fileName": file_name, "message": message}


def native_complete(processed: int, total: int, status: str) -> Event:
    return {"type": "native_complete", "processed": processed, "total": total, "status": status}


def native_summary(uploaded: int, skipped_hash: int, skipped_size: int, errors: int,
                   bytes_uploaded: int, duration_ms: int) -> Event:
    return {
        "type": "native_summary",
        "uploadedCount": uploaded,
        "skippedHashCount": skipped_hash,
        "skippedSizeCount": skipped_size,
        "errorCount": errors,
        "bytesUploaded": bytes_uploaded,
        "durationMs": duration_ms,
    }


def error(message: str) -> Event:
    return {"type": "error", "message": message}
