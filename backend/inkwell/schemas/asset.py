"""
Inkwell Backend: Pydantic Request/Response Schemas
==================================================

What:  Pydantic models defining the API contract and the value objects the
       lifecycle service returns.
How:   FastAPI validates request bodies against these models and serializes
       responses from them; services return AssetSnapshot instead of live
       ORM objects so nothing outside a transaction touches the session.
Who:   Route handlers, AssetLifecycle, ReconciliationScheduler.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from inkwell.models.asset import AssetOrigin, ExtractionStatus, UploadStatus


# ══════════════════════════════════════════════════════════════════════════
# Service Value Objects
# ══════════════════════════════════════════════════════════════════════════


class AssetSnapshot(BaseModel):
    """Immutable copy of an Asset row taken inside a transaction."""

    id: uuid.UUID
    owner_id: uuid.UUID
    note_id: uuid.UUID
    file_name: str
    file_size: int
    mime_type: str
    storage_key: str
    thumbnail_key: Optional[str] = None
    origin: AssetOrigin
    upload_status: UploadStatus
    extraction_status: Optional[ExtractionStatus] = None
    extracted_content: Optional[str] = None
    total_pages: Optional[int] = None
    extraction_completed_at: Optional[datetime] = None
    upload_expires_at: datetime
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True, "frozen": True}


class UploadIntent(BaseModel):
    """Returned by create_upload_intent: where the client should upload, and until when."""

    asset_id: uuid.UUID
    storage_key: str
    expires_at: datetime


class ExtractionJob(BaseModel):
    """The unit of work handed to the OCR dispatch pool after confirmation commits."""

    asset_id: uuid.UUID
    storage_key: str
    mime_type: str

    model_config = {"frozen": True}


class ReconciliationReport(BaseModel):
    """
    What:  Outcome of one reconciliation sweep.

    Fields:
        stuck_found:     assets found in `processing` past the deadline
        timed_out:       of those, how many were actually failed by this sweep
                         (the rest were resolved concurrently by a callback)
        expired_intents: PENDING intents moved to FAILED
        errors:          per-asset failures that were logged and skipped
    """

    stuck_found: int = 0
    timed_out: int = 0
    expired_intents: int = 0
    errors: int = 0


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class UploadIntentRequest(BaseModel):
    """
    What:  Client announcement of an upcoming upload.
    Who:   Body of POST /api/assets/upload-intents.

    Shape validation happens here; MIME allow-list, size cap, quota and note
    ownership are checked by UploadPolicy so the limits stay configurable.
    Origin is not client-settable: assets created here are always `upload`.
    """

    note_id: uuid.UUID
    file_name: str = Field(min_length=1, max_length=255)
    mime_type: str = Field(min_length=1, max_length=100)
    file_size: int = Field(gt=0, description="Declared size in bytes")

    @field_validator("mime_type")
    @classmethod
    def normalize_mime_type(cls, v: str) -> str:
        return v.strip().lower()


class ExtractionResultRequest(BaseModel):
    """Body of the worker's success callback."""

    content: str
    total_pages: int = Field(ge=0)


class ExtractionFailureRequest(BaseModel):
    """Body of the worker's failure callback."""

    reason: Optional[str] = Field(default=None, max_length=2000)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class UploadIntentResponse(BaseModel):
    asset_id: uuid.UUID = Field(description="Identifier to pass to the confirm endpoint")
    storage_key: str = Field(description="Blob store key the client must upload to")
    expires_at: datetime = Field(description="Upload deadline (UTC ISO 8601)")


class UploadConfirmResponse(BaseModel):
    """
    What:  Result of a successful confirmation.
    When:  Returned once per asset; extraction has been queued (or will be
           failed and recorded) by the time the client polls the detail view.
    """

    asset_id: uuid.UUID
    upload_status: UploadStatus
    extraction_status: Optional[ExtractionStatus]

    @classmethod
    def from_snapshot(cls, snapshot: AssetSnapshot) -> "UploadConfirmResponse":
        return cls(
            asset_id=snapshot.id,
            upload_status=snapshot.upload_status,
            extraction_status=snapshot.extraction_status,
        )


class AssetDetailResponse(BaseModel):
    """
    What:  Full view of an asset for its owner.
    Who:   Returned by GET /api/assets/{asset_id}.

    Extracted content, page count and completion time are only populated
    once extraction has completed.
    """

    id: uuid.UUID
    note_id: uuid.UUID
    file_name: str
    file_size: int
    mime_type: str
    storage_key: str
    thumbnail_key: Optional[str] = None
    origin: AssetOrigin
    upload_status: UploadStatus
    extraction_status: Optional[ExtractionStatus] = None
    extracted_content: Optional[str] = None
    total_pages: Optional[int] = None
    extraction_completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_snapshot(cls, snapshot: AssetSnapshot) -> "AssetDetailResponse":
        completed = snapshot.extraction_status == ExtractionStatus.COMPLETED
        return cls(
            id=snapshot.id,
            note_id=snapshot.note_id,
            file_name=snapshot.file_name,
            file_size=snapshot.file_size,
            mime_type=snapshot.mime_type,
            storage_key=snapshot.storage_key,
            thumbnail_key=snapshot.thumbnail_key,
            origin=snapshot.origin,
            upload_status=snapshot.upload_status,
            extraction_status=snapshot.extraction_status,
            extracted_content=snapshot.extracted_content if completed else None,
            total_pages=snapshot.total_pages if completed else None,
            extraction_completed_at=snapshot.extraction_completed_at if completed else None,
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
        )


class ExtractionCallbackResponse(BaseModel):
    asset_id: uuid.UUID
    applied: bool = Field(description="False when the callback was a no-op (late or duplicate)")


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Example:
        {
            "error": "already_confirmed",
            "message": "This upload has already been confirmed",
            "details": null,
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    ocr_dispatcher: str = Field(description="OCR dispatcher circuit: closed, half_open, open")
    dispatch_queue_depth: int = Field(description="Extraction jobs waiting for a dispatch worker")
    reconciliation: str = Field(description="Reconciliation scheduler: running, stopped, disabled")
    uptime_seconds: float = Field(description="Seconds since service started")
