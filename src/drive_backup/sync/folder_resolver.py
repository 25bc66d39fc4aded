"""Mapping of local relative directories to remote folder ids."""

import logging
from typing import Dict, Optional

from ..exceptions import FolderResolutionError, RemoteAPIError
from ..utils.session_log import SessionRecorder

logger = logging.getLogger(__name__)


def get_or_create_folder(api, name: str, parent_id: Optional[str]) -> str:
    """Return the id of folder ``name`` under ``parent_id``, creating it if absent.

    The lookup and the create are separate requests, so a folder created by
    someone else in between can end up duplicated.

    Raises:
        FolderResolutionError: If the folder can neither be found nor created
    """
    try:
        folder_id = api.find_folder(name, parent_id)
        if folder_id:
            return folder_id
        return api.create_folder(name, parent_id)
    except RemoteAPIError as e:
        raise FolderResolutionError(f"Cannot find or create folder '{name}': {e}") from e


class RemoteFolderResolver:
    """Creates the remote folder hierarchy on demand and memoizes it."""

    def __init__(self, api, root_folder_id: str, recorder: Optional[SessionRecorder] = None):
        self.api = api
        self.root_folder_id = root_folder_id
        self.recorder = recorder or SessionRecorder()
        self.cache: Dict[str, str] = {"": root_folder_id}

    def ensure_path(self, relative_dir: str) -> str:
        """Resolve ``relative_dir`` (e.g. ``"photos/2024"``) to a folder id.

        Raises:
            FolderResolutionError: If any segment cannot be resolved
        """
        relative_dir = relative_dir.strip("/")
        if relative_dir in self.cache:
            return self.cache[relative_dir]

        current_path = ""
        parent_id = self.root_folder_id
        for segment in relative_dir.split("/"):
            if not segment:
                continue
            current_path = f"{current_path}/{segment}" if current_path else segment
            cached = self.cache.get(current_path)
            if cached is not None:
                parent_id = cached
                continue
            folder_id = get_or_create_folder(self.api, segment, parent_id)
            self.cache[current_path] = folder_id
            parent_id = folder_id
            self.recorder.log(f"Created/Found folder '{segment}' path='{current_path}' id={folder_id}")
        return parent_id
