"""
Inkwell Backend: Upload Policy
==============================

What:  Checks an upload announcement before an intent is created.
How:   Cheap checks first (MIME type, size, file name), then the note
       ownership lookup, then the quota sum query.
Who:   Called by AssetLifecycle.create_upload_intent inside the same
       transaction that inserts the intent.

Quota:
    used  = sum(file_size) over the note's PENDING and UPLOADED assets
    allow = used + new_size <= settings.note_storage_limit
    Expired intents (FAILED) release their reservation.
"""

import logging
from typing import Optional, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from inkwell.config import settings
from inkwell.exceptions import ForbiddenError, StorageQuotaExceededError, ValidationError
from inkwell.services.asset_store import AssetStore, asset_store

logger = logging.getLogger(__name__)

MIN_FILE_NAME_LENGTH = 2
MAX_FILE_NAME_LENGTH = 255


class NoteAccessChecker(Protocol):
    """Answers whether a user owns a note. Notes live in another service."""

    async def is_owner(self, note_id: UUID, user_id: UUID) -> bool: ...


class UploadPolicy:
    def __init__(
        self,
        store: Optional[AssetStore] = None,
        note_access: Optional[NoteAccessChecker] = None,
        allowed_mime_types: Optional[set[str]] = None,
        max_file_size: Optional[int] = None,
        note_storage_limit: Optional[int] = None,
    ):
        self.store = store or asset_store
        self.note_access = note_access
        self.allowed_mime_types = allowed_mime_types or settings.allowed_mime_types_set
        self.max_file_size = max_file_size or settings.max_file_size
        self.note_storage_limit = note_storage_limit or settings.note_storage_limit

    def validate_file(self, file_name: str, mime_type: str, file_size: int) -> None:
        """
        Raises:
            ValidationError: Unsupported MIME type, size out of range, or a
                file name outside 2..255 characters
        """
        mime = mime_type.strip().lower()
        if mime not in self.allowed_mime_types:
            raise ValidationError(
                message=(
                    f"File type '{mime_type}' is not supported. "
                    f"Allowed types: {', '.join(sorted(self.allowed_mime_types))}"
                ),
                field="mime_type",
                context={"mime_type": mime_type},
            )

        if file_size <= 0 or file_size > self.max_file_size:
            max_mb = self.max_file_size / (1024 * 1024)
            raise ValidationError(
                message=f"File size must be between 1 byte and {max_mb:.0f}MB.",
                field="file_size",
                context={"file_size": file_size, "max_file_size": self.max_file_size},
            )

        name_length = len(file_name.strip())
        if not MIN_FILE_NAME_LENGTH <= name_length <= MAX_FILE_NAME_LENGTH:
            raise ValidationError(
                message=(
                    f"File name must be between {MIN_FILE_NAME_LENGTH} and "
                    f"{MAX_FILE_NAME_LENGTH} characters."
                ),
                field="file_name",
                context={"length": name_length},
            )

    async def validate(
        self,
        session: AsyncSession,
        owner_id: UUID,
        note_id: UUID,
        file_name: str,
        mime_type: str,
        file_size: int,
    ) -> None:
        """
        Full pre-intent check.

        Raises:
            ValidationError: See validate_file
            ForbiddenError: The configured NoteAccessChecker denies ownership
            StorageQuotaExceededError: The note would exceed its storage limit
        """
        self.validate_file(file_name, mime_type, file_size)

        if self.note_access is not None and not await self.note_access.is_owner(note_id, owner_id):
            raise ForbiddenError(resource="note", resource_id=str(note_id))

        used = await self.store.sum_note_usage(session, note_id)
        if used + file_size > self.note_storage_limit:
            logger.info(
                "Upload to note %s rejected by quota (used=%d, requested=%d, limit=%d)",
                note_id,
                used,
                file_size,
                self.note_storage_limit,
            )
            raise StorageQuotaExceededError(limit_bytes=self.note_storage_limit, used_bytes=used)
