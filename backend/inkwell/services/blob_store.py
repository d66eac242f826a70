"""
Inkwell Backend: Blob Store
===========================

What:  Abstract blob storage plus a local-filesystem implementation.
How:   Clients upload file bytes out-of-band to the storage key handed out
       by create_upload_intent; the backend only checks existence at
       confirmation and deletes blobs after an asset is removed or its
       intent expires.
Who:   AssetLifecycle (exists, delete); tests and tooling (put).

Key safety:
    Storage keys are relative paths. LocalBlobStore resolves every key
    against its root and rejects any key that would land outside it
    (`../`, absolute paths), so a crafted key can never touch other files.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from inkwell.config import settings
from inkwell.exceptions import BlobStorageError, ValidationError

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Interface every blob backend implements."""

    @abstractmethod
    async def put(self, key: str, content: bytes) -> None:
        """Write bytes under `key`, replacing any existing blob."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if a blob is stored under `key`."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """
        Remove the blob under `key`. Deleting a missing blob is not an error.

        Raises:
            BlobStorageError: The backend failed to delete an existing blob
        """


class LocalBlobStore(BlobStore):
    """
    Stores blobs as files under a root directory.

    Directory Structure (mirrors the storage key):
        storage/
        └── users/{owner_id}/notes/{note_id}/assets/
            ├── 7f0c..._lecture_1.pdf
            └── 9a2e..._whiteboard.png
    """

    def __init__(self, storage_root: Optional[str] = None):
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.storage_root.mkdir(parents=True, exist_ok=True)
        logger.info("LocalBlobStore initialized with storage_root=%s", self.storage_root)

    def _resolve(self, key: str) -> Path:
        if not key or key.startswith("/"):
            raise ValidationError(
                message="Invalid storage key",
                field="storage_key",
                context={"storage_key": key},
            )
        path = (self.storage_root / key).resolve()
        if path == self.storage_root or not path.is_relative_to(self.storage_root):
            raise ValidationError(
                message="Invalid storage key",
                field="storage_key",
                context={"storage_key": key},
            )
        return path

    async def put(self, key: str, content: bytes) -> None:
        path = self._resolve(key)
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(content)
        except OSError as e:
            logger.error("Failed to store blob %s: %s", key, str(e))
            raise BlobStorageError(
                message="Failed to store file. Please try again.",
                context={"storage_key": key, "os_error": str(e)},
            )
        logger.info("Blob stored: %s (%d bytes)", key, len(content))

    async def exists(self, key: str) -> bool:
        path = self._resolve(key)
        try:
            return await aiofiles.os.path.isfile(path)
        except OSError as e:
            raise BlobStorageError(
                message="Could not check file storage. Please try again.",
                context={"storage_key": key, "os_error": str(e)},
            )

    async def delete(self, key: str) -> None:
        path = self._resolve(key)
        try:
            await aiofiles.os.remove(path)
            logger.info("Blob deleted: %s", key)
        except FileNotFoundError:
            logger.debug("Blob already gone: %s", key)
        except OSError as e:
            raise BlobStorageError(
                message="Failed to delete file",
                context={"storage_key": key, "os_error": str(e)},
            )
