"""
Inkwell Backend: Asset SQLAlchemy Model
=======================================

What:  ORM model representing the `assets` table.
How:   Inherits from DeclarativeBase; Alembic mirrors it in
       versions/001_create_assets_table.py.
Who:   Read and written only through AssetStore.

Table Design:
    - UUID primary key generated in Python, so the same model runs on
      PostgreSQL (asyncpg) and SQLite (aiosqlite, tests)
    - storage_key / thumbnail_key: blob store keys, immutable after insert
    - upload_status: PENDING → UPLOADED | FAILED, both terminal
    - extraction_status: NULL until confirmation, then
      processing → completed | failed (pending is reserved for a queued state)
    - version: optimistic-lock counter, bumped by every conditional update
    - updated_at: time of the last state transition; the timeout sweep
      compares it against the extraction deadline

Indexes:
    (extraction_status, updated_at)   timeout sweep
    (upload_status, upload_expires_at) intent expiry sweep
    note_id                           per-note quota sums
    owner_id                          per-user lookups
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Enum, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from inkwell.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadStatus(str, enum.Enum):
    PENDING = "PENDING"
    UPLOADED = "UPLOADED"
    FAILED = "FAILED"


class ExtractionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AssetOrigin(str, enum.Enum):
    UPLOAD = "upload"
    AI_GENERATED = "ai_generated"


class UTCDateTime(TypeDecorator):
    """
    TIMESTAMP WITH TIME ZONE that always hands back aware UTC datetimes.

    SQLite stores no offset, so values read back are naive; they were
    written as UTC and get the UTC tzinfo reattached.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # VARCHAR + CHECK rather than a native enum type; stores member values
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class Asset(Base):
    """
    A file attached to a note, and the state of its text extraction.

    Lifecycle:
        1. create_upload_intent → PENDING, extraction_status NULL
        2. confirm_upload       → UPLOADED + processing (exactly once)
        3. worker callback      → completed (content, pages) or failed
        4. timeout sweep        → failed, if still processing past the deadline
        5. intent expiry sweep  → FAILED, if never confirmed
    """

    __tablename__ = "assets"

    # ── Identity & Ownership ──────────────────────────────────────────────
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    note_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # ── Declared File Attributes (immutable) ──────────────────────────────
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    thumbnail_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    origin: Mapped[AssetOrigin] = mapped_column(
        _enum_column(AssetOrigin, "asset_origin"),
        nullable=False,
        default=AssetOrigin.UPLOAD,
    )

    # ── State ─────────────────────────────────────────────────────────────
    upload_status: Mapped[UploadStatus] = mapped_column(
        _enum_column(UploadStatus, "upload_status"),
        nullable=False,
        default=UploadStatus.PENDING,
    )
    extraction_status: Mapped[Optional[ExtractionStatus]] = mapped_column(
        _enum_column(ExtractionStatus, "extraction_status"),
        nullable=True,
    )
    extracted_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_pages: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    extraction_completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    upload_expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # ── Optimistic Lock & Timestamps ──────────────────────────────────────
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_assets_extraction_status_updated_at", "extraction_status", "updated_at"),
        Index("idx_assets_upload_status_expires_at", "upload_status", "upload_expires_at"),
        Index("idx_assets_note_id", "note_id"),
        Index("idx_assets_owner_id", "owner_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Asset(id={self.id}, upload_status='{self.upload_status}', "
            f"extraction_status='{self.extraction_status}', version={self.version})>"
        )
