"""Google Drive v3 client used by the backup engine.

``CloudStorageAPI`` is the contract the engine talks to; ``DriveAPI``
implements it over the Drive REST API with ``requests``. Every call reads
the current auth headers from the shared ``AuthCredential`` so a refresh
takes effect on the next request.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..auth.credentials import AuthCredential
from ..exceptions import AuthError, RemoteAPIError, TransientNetworkError, TransientTimeout

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


@dataclass
class RemoteEntry:
    """One child of a remote folder."""
    id: str
    name: str
    size: int = 0
    md5: Optional[str] = None
    is_folder: bool = False


@dataclass
class ChunkResult:
    """Server answer to one chunk PUT."""
    status: int
    received: Optional[int] = None  # bytes persisted, from the Range header
    file_id: Optional[str] = None
    body: str = ""

    @property
    def complete(self) -> bool:
        return self.status in (200, 201)

    @property
    def accepted(self) -> bool:
        return self.status == 308


class CloudStorageAPI(ABC):
    """Operations the backup engine needs from the remote storage."""

    @abstractmethod
    def list_children(self, parent_id: str,
                      page_token: Optional[str] = None) -> Tuple[List[RemoteEntry], Optional[str]]:
        """List one page of non-trashed children; returns (entries, next_page_token)."""

    @abstractmethod
    def find_folder(self, name: str, parent_id: Optional[str]) -> Optional[str]:
        """Find a non-trashed folder by exact name."""

    @abstractmethod
    def create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        """Create a folder and return its id."""

    @abstractmethod
    def find_file(self, name: str, parent_id: str) -> Optional[str]:
        """Find a non-trashed file by exact name."""

    @abstractmethod
    def initiate_resumable_upload(self, name: str, parent_id: Optional[str],
                                  existing_id: Optional[str], size: int) -> str:
        """Start a resumable upload and return the session URI."""

    @abstractmethod
    def put_chunk(self, session_uri: str, start: int, data: bytes, total: int) -> ChunkResult:
        """Send the bytes ``[start, start + len(data))`` of a ``total``-byte upload."""

    @abstractmethod
    def query_upload_offset(self, session_uri: str, total: int) -> int:
        """Ask the server how many bytes of the upload it has persisted."""

    @abstractmethod
    def get_metadata(self, file_id: str) -> Dict[str, Any]:
        """Return ``{'id', 'name', 'size', 'md5'}`` for a file."""

    @abstractmethod
    def probe(self) -> int:
        """Issue a lightweight authenticated request and return its HTTP status."""


def escape_query_value(value: str) -> str:
    """Escape a literal for use inside a Drive ``q`` expression."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def parse_range_header(value: Optional[str]) -> Optional[int]:
    """Convert ``bytes=0-N`` into the number of bytes received (N + 1)."""
    if not value:
        return None
    try:
        span = value.split("=", 1)[-1].strip()
        end = span.split("-", 1)[1]
        return int(end) + 1
    except (IndexError, ValueError):
        logger.warning(f"Unparseable Range header: {value!r}")
        return None


class DriveAPI(CloudStorageAPI):
    """Google Drive v3 implementation of ``CloudStorageAPI``."""

    def __init__(self, credential: AuthCredential,
                 base_url: str = "https://www.googleapis.com/drive/v3",
                 upload_url: str = "https://www.googleapis.com/upload/drive/v3",
                 timeout: float = 60.0,
                 session: Optional[requests.Session] = None):
        """Initialize the Drive client.

        Args:
            credential: Shared auth header cell
            base_url: Drive metadata API root
            upload_url: Drive upload API root
            timeout: Per-request socket timeout in seconds
            session: Optional preconfigured requests session
        """
        self.credential = credential
        self.base_url = base_url.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, url: str, authenticated: bool = True,
                 headers: Optional[Dict[str, str]] = None, **kwargs) -> requests.Response:
        request_headers = self.credential.headers if authenticated else {}
        if headers:
            request_headers.update(headers)
        try:
            return self.session.request(method, url, headers=request_headers,
                                        timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransientTimeout(f"{method} {url} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientNetworkError(f"{method} {url} unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            # dropped streams and other transport faults; the response never arrived
            raise TransientNetworkError(f"{method} {url} transport error: {e}") from e

    @staticmethod
    def _check(response: requests.Response, action: str) -> requests.Response:
        if response.status_code == 401:
            raise AuthError(f"{action} unauthorized", response.status_code, response.text)
        if not response.ok:
            raise RemoteAPIError(f"{action} failed", response.status_code, response.text)
        return response

    def _search(self, query: str, fields: str) -> List[Dict[str, Any]]:
        response = self._request(
            "GET", f"{self.base_url}/files",
            params={"q": query, "fields": fields, "spaces": "drive"}
        )
        self._check(response, "Search")
        return response.json().get("files", [])

    def list_children(self, parent_id: str,
                      page_token: Optional[str] = None) -> Tuple[List[RemoteEntry], Optional[str]]:
        params = {
            "q": f"'{escape_query_value(parent_id)}' in parents and trashed=false",
            "fields": "nextPageToken,files(id,name,size,md5Checksum,mimeType)",
            "pageSize": 1000,
        }
        if page_token:
            params["pageToken"] = page_token

        response = self._request("GET", f"{self.base_url}/files", params=params)
        self._check(response, f"List folder {parent_id}")
        payload = response.json()

        entries = []
        for item in payload.get("files", []):
            try:
                size = int(item.get("size", 0))
            except (TypeError, ValueError):
                size = 0
            entries.append(RemoteEntry(
                id=item["id"],
                name=item["name"],
                size=size,
                md5=item.get("md5Checksum") or None,
                is_folder=item.get("mimeType") == FOLDER_MIME_TYPE,
            ))
        return entries, payload.get("nextPageToken") or None

    def find_folder(self, name: str, parent_id: Optional[str]) -> Optional[str]:
        query = f"name='{escape_query_value(name)}' and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        if parent_id is not None:
            query += f" and '{escape_query_value(parent_id)}' in parents"
        files = self._search(query, "files(id,name)")
        return files[0]["id"] if files else None

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        metadata: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id is not None:
            metadata["parents"] = [parent_id]
        response = self._request("POST", f"{self.base_url}/files", json=metadata,
                                 params={"fields": "id"})
        self._check(response, f"Create folder '{name}'")
        return response.json()["id"]

    def find_file(self, name: str, parent_id: str) -> Optional[str]:
        query = (f"name='{escape_query_value(name)}' and '{escape_query_value(parent_id)}' in parents "
                 f"and mimeType!='{FOLDER_MIME_TYPE}' and trashed=false")
        files = self._search(query, "files(id,name,size)")
        return files[0]["id"] if files else None

    def initiate_resumable_upload(self, name: str, parent_id: Optional[str],
                                  existing_id: Optional[str], size: int) -> str:
        metadata: Dict[str, Any] = {"name": name}
        if existing_id:
            method = "PATCH"
            url = f"{self.upload_url}/files/{existing_id}"
        else:
            method = "POST"
            url = f"{self.upload_url}/files"
            if parent_id is not None:
                metadata["parents"] = [parent_id]

        response = self._request(
            method, url,
            params={"uploadType": "resumable"},
            json=metadata,
            headers={"X-Upload-Content-Length": str(size)},
        )
        self._check(response, f"Initiate upload of '{name}'")

        session_uri = response.headers.get("Location")
        if not session_uri:
            raise RemoteAPIError(f"No session URI returned for '{name}'",
                                 response.status_code, response.text)
        return session_uri

    def put_chunk(self, session_uri: str, start: int, data: bytes, total: int) -> ChunkResult:
        if data:
            content_range = f"bytes {start}-{start + len(data) - 1}/{total}"
        else:
            content_range = f"bytes */{total}"
        response = self._request("PUT", session_uri, authenticated=False, data=data,
                                 headers={"Content-Range": content_range})

        result = ChunkResult(status=response.status_code, body=response.text)
        if result.accepted:
            result.received = parse_range_header(response.headers.get("Range"))
        elif result.complete:
            try:
                result.file_id = response.json().get("id")
            except ValueError:
                logger.warning(f"Upload completed without a JSON body ({len(response.text)} bytes)")
        return result

    def query_upload_offset(self, session_uri: str, total: int) -> int:
        response = self._request("PUT", session_uri, authenticated=False, data=b"",
                                 headers={"Content-Range": f"bytes */{total}"})
        if response.status_code == 308:
            return parse_range_header(response.headers.get("Range")) or 0
        if response.status_code in (200, 201):
            return total
        self._check(response, "Query upload offset")
        raise RemoteAPIError("Unexpected upload status", response.status_code, response.text)

    def get_metadata(self, file_id: str) -> Dict[str, Any]:
        response = self._request("GET", f"{self.base_url}/files/{file_id}",
                                 params={"fields": "id,name,size,md5Checksum"})
        self._check(response, f"Metadata for {file_id}")
        item = response.json()
        return {
            "id": item.get("id", file_id),
            "name": item.get("name"),
            "size": int(item.get("size", 0)),
            "md5": item.get("md5Checksum"),
        }

    def probe(self) -> int:
        response = self._request("GET", f"{self.base_url}/about", params={"fields": "user"})
        return response.status_code
