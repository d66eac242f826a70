"""
Inkwell Backend: Custom Exception Hierarchy
===========================================

What:  Application-specific exceptions for the asset lifecycle.
How:   Each exception carries a user-facing message and an optional context
       dict. Global handlers (registered in main.py) map them to HTTP
       status codes; context is logged but never returned to clients.
Who:   Raised by services and routes; caught by global handlers.

Exception Hierarchy:
    InkwellError (base)
    ├── ValidationError              → 400 Bad Request
    │   └── StorageQuotaExceededError → 400 Bad Request
    ├── BlobNotUploadedError         → 400 Bad Request (retryable)
    ├── ForbiddenError               → 403 Forbidden
    ├── NotFoundError                → 404 Not Found
    ├── ConflictError                → 409 Conflict
    │   ├── AlreadyConfirmedError
    │   └── UploadIntentExpiredError
    ├── StorageFailureError          → 500 Internal Server Error
    ├── BlobStorageError             → 500 Internal Server Error
    ├── DispatchFailureError         → resolved into extraction_status=failed
    └── CircuitBreakerOpenError      → resolved into extraction_status=failed
"""

from typing import Any, Dict, Optional


class InkwellError(Exception):
    """
    Base exception for all Inkwell application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(InkwellError):
    """
    Raised when client input fails validation.

    When:    Unsupported MIME type, size out of range, bad file name,
             malformed storage key.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class StorageQuotaExceededError(ValidationError):
    """Raised when a new upload would push a note past its storage limit."""

    def __init__(
        self,
        limit_bytes: int,
        used_bytes: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx.update({"limit_bytes": limit_bytes, "used_bytes": used_bytes})
        super().__init__(
            message=(
                f"Note storage limit of {limit_bytes // (1024 * 1024)}MB would be exceeded. "
                "Delete unused files and try again."
            ),
            field="file_size",
            context=ctx,
        )
        self.limit_bytes = limit_bytes
        self.used_bytes = used_bytes


class NotFoundError(InkwellError):
    """
    Raised when a requested resource does not exist.

    SQLAlchemy returns None for missing records; the service layer converts
    None into NotFoundError so routes never inspect query results.
    HTTP: 404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ForbiddenError(InkwellError):
    """
    Raised when the caller does not own the resource.

    HTTP: 403 Forbidden
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(
            message=f"You do not have access to this {resource}",
            context=ctx,
        )


class ConflictError(InkwellError):
    """Base for state conflicts on an asset (HTTP 409)."""


class AlreadyConfirmedError(ConflictError):
    """
    Raised when an upload confirmation cannot apply.

    When:
        - The asset's upload status is already UPLOADED
        - Another request won the compare-and-swap on the same version
    A second confirmation is always an error, so extraction is never
    re-triggered by a retried confirm call.
    """

    def __init__(self, asset_id: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        if asset_id:
            ctx["asset_id"] = asset_id
        super().__init__(message="This upload has already been confirmed", context=ctx)


class UploadIntentExpiredError(ConflictError):
    """Raised when confirming an intent the expiry sweep already marked FAILED."""

    def __init__(self, asset_id: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        if asset_id:
            ctx["asset_id"] = asset_id
        super().__init__(
            message="The upload window for this file has expired. Request a new upload.",
            context=ctx,
        )


class BlobNotUploadedError(InkwellError):
    """
    Raised when confirmation is attempted before the blob exists.

    The asset stays PENDING, so the client can finish the upload and
    confirm again before the intent expires.
    HTTP: 400 Bad Request
    """

    def __init__(self, storage_key: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        if storage_key:
            ctx["storage_key"] = storage_key
        super().__init__(
            message="The file has not been uploaded yet. Finish the upload and confirm again.",
            context=ctx,
        )


class StorageFailureError(InkwellError):
    """
    Raised when database operations fail unexpectedly.

    The message returned to the client is always generic; the SQL error
    is logged server-side only.
    HTTP: 500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class BlobStorageError(InkwellError):
    """
    Raised when a blob store operation fails.

    When:    Permission denied, I/O error, backend unreachable.
    HTTP:    500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DispatchFailureError(InkwellError):
    """
    Raised when the OCR worker rejects or cannot receive an extraction job.

    Never surfaced to the caller of confirm_upload, who already got a
    success response. The dispatch pool routes it to fail_extraction.
    """

    def __init__(
        self,
        message: str = "OCR worker did not accept the extraction request",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CircuitBreakerOpenError(DispatchFailureError):
    """
    Raised when the dispatcher's circuit breaker is OPEN.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all dispatches for M seconds)
        → After M seconds → HALF-OPEN (allow one test dispatch)
        → If test succeeds → CLOSED
        → If test fails → OPEN again
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(
            message=(
                "OCR worker is temporarily unavailable due to repeated failures. "
                f"Dispatch resumes in approximately {recovery_time} seconds."
            ),
            context=ctx,
        )
        self.recovery_time = recovery_time
