"""Remote storage clients."""

from .drive_api import ChunkResult, CloudStorageAPI, DriveAPI, RemoteEntry

__all__ = ["ChunkResult", "CloudStorageAPI", "DriveAPI", "RemoteEntry"]
