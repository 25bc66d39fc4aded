"""Per-folder index of remote files used to skip unchanged uploads."""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..exceptions import RemoteAPIError, TransientNetworkError, TransientTimeout
from ..utils.file_utils import FileHelper
from ..utils.logging import TimedOperation
from ..utils.session_log import SessionRecorder
from .scanner import LocalFile

logger = logging.getLogger(__name__)

HASH_MATCH_REASON = "Already exists (size+hash match)"
SIZE_MATCH_REASON = "Already exists (size match)"


@dataclass
class RemoteFileRecord:
    """What the remote side knows about one file."""
    remote_id: str
    size: int
    content_hash: Optional[str] = None  # None when the remote has no verifiable hash


class SkipDecision(str, Enum):
    """Outcome of comparing a local file with the index."""
    HASH_MATCH = "hash_match"
    SIZE_MATCH = "size_match"
    UPLOAD = "upload"


class DedupIndex:
    """Name → RemoteFileRecord map for one remote folder."""

    def __init__(self, folder_id: str, records: Optional[Dict[str, RemoteFileRecord]] = None):
        self.folder_id = folder_id
        self.records: Dict[str, RemoteFileRecord] = dict(records or {})

    def __len__(self) -> int:
        return len(self.records)

    def get(self, name: str) -> Optional[RemoteFileRecord]:
        return self.records.get(name)

    def decide(self, local_file: LocalFile) -> Tuple[SkipDecision, Optional[str]]:
        """Decide whether ``local_file`` needs uploading.

        The local hash is only computed when a same-named remote file has the
        same size.

        Returns:
            (decision, local md5 or None if it was not computed)
        """
        record = self.records.get(local_file.name)
        if record is None or record.size != local_file.size:
            return SkipDecision.UPLOAD, None

        with TimedOperation(logger, f"md5 of {local_file.name}", log_level="DEBUG"):
            local_md5 = FileHelper.compute_md5(local_file.path)

        if record.content_hash:
            if local_md5 and local_md5.lower() == record.content_hash.lower():
                return SkipDecision.HASH_MATCH, local_md5
            return SkipDecision.UPLOAD, local_md5
        return SkipDecision.SIZE_MATCH, local_md5

    def record_upload(self, name: str, remote_id: Optional[str], size: int,
                      content_hash: Optional[str]) -> None:
        """Remember a file uploaded during this run (in memory only)."""
        self.records[name] = RemoteFileRecord(remote_id or "?", size, content_hash)

    @classmethod
    def fetch(cls, api, folder_id: str) -> "DedupIndex":
        """Build the index from a live, paginated listing.

        Listing errors are logged and whatever was gathered so far is kept.
        """
        records: Dict[str, RemoteFileRecord] = {}
        page_token = None
        try:
            while True:
                entries, page_token = api.list_children(folder_id, page_token)
                for entry in entries:
                    if entry.is_folder:
                        continue
                    records[entry.name] = RemoteFileRecord(entry.id, entry.size, entry.md5)
                if not page_token:
                    break
        except (RemoteAPIError, TransientNetworkError, TransientTimeout) as e:
            logger.error(f"[prefetch] listing folder {folder_id} failed after {len(records)} entries: {e}")
        return cls(folder_id, records)

    @classmethod
    def load_cache(cls, cache_file: Path, folder_id: str) -> "DedupIndex":
        """Load the index from a JSON cache file; unreadable caches give an empty index."""
        records: Dict[str, RemoteFileRecord] = {}
        try:
            with open(cache_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            for item in data:
                md5 = item.get("md5")
                records[item["name"]] = RemoteFileRecord(
                    remote_id=item["id"],
                    size=int(item.get("size", 0)),
                    content_hash=md5 if md5 not in (None, "", "null") else None,
                )
            logger.info(f"[cache] read {len(records)} entries from {cache_file.name}")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"[cache] read error {cache_file}: {e}")
        return cls(folder_id, records)

    def save_cache(self, cache_file: Path) -> None:
        """Write the index as a JSON array of ``{name, id, size, md5}``."""
        data: List[Dict] = [
            {"name": name, "id": record.remote_id, "size": record.size, "md5": record.content_hash}
            for name, record in self.records.items()
        ]
        try:
            cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(cache_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False)
            logger.info(f"[cache] wrote {len(data)} entries to {cache_file.name}")
        except OSError as e:
            logger.error(f"[cache] write error {cache_file}: {e}")


class DedupCatalog:
    """Holds the DedupIndex of every remote folder touched in a session."""

    def __init__(self, api, cache_dir: Path, reverify: bool = False,
                 recorder: Optional[SessionRecorder] = None):
        self.api = api
        self.cache_dir = Path(cache_dir)
        self.reverify = reverify
        self.recorder = recorder or SessionRecorder()
        self._indexes: Dict[str, DedupIndex] = {}

    def cache_file(self, folder_id: str) -> Path:
        return self.cache_dir / f"drive_cache_{folder_id}.json"

    def load_root(self, folder_id: str) -> DedupIndex:
        """Load the target folder's index, preferring the local cache unless reverifying."""
        cache_file = self.cache_file(folder_id)
        index = None
        if not self.reverify and cache_file.exists():
            index = DedupIndex.load_cache(cache_file, folder_id)

        if index is None or len(index) == 0:
            index = DedupIndex.fetch(self.api, folder_id)
            self.recorder.log(f"Fetched remote top-level listing count={len(index)} reverify={self.reverify}")
            index.save_cache(cache_file)
        else:
            self.recorder.log(f"Using cached remote top-level metadata count={len(index)}")

        self._indexes[folder_id] = index
        return index

    def for_folder(self, folder_id: str, relative_dir: str = "") -> DedupIndex:
        """Return the index for ``folder_id``, listing it live on first use."""
        index = self._indexes.get(folder_id)
        if index is None:
            self.recorder.log(f"Listing remote folder for path='{relative_dir}'")
            index = DedupIndex.fetch(self.api, folder_id)
            self._indexes[folder_id] = index
        return index
