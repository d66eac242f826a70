"""
Inkwell Backend: OCR Worker Callback Handlers
=============================================

What:  Endpoints the OCR worker calls when an extraction finishes.
How:   Authenticated by X-Worker-Token. Both callbacks are idempotent: a
       late, duplicate or out-of-order callback gets 200 with
       `applied: false` rather than an error, so the worker never retries
       a callback that can no longer change anything.
Who:   The external OCR worker only.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends

from inkwell.routes.dependencies import get_lifecycle, verify_worker_token
from inkwell.schemas.asset import (
    ErrorResponse,
    ExtractionCallbackResponse,
    ExtractionFailureRequest,
    ExtractionResultRequest,
)
from inkwell.services.asset_lifecycle import AssetLifecycle

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/internal/ocr",
    tags=["OCR Worker"],
    dependencies=[Depends(verify_worker_token)],
    responses={403: {"description": "Missing or invalid worker token", "model": ErrorResponse}},
)


@router.post(
    "/{asset_id}/result",
    response_model=ExtractionCallbackResponse,
    summary="Report extracted text",
)
async def report_result(
    asset_id: UUID,
    body: ExtractionResultRequest,
    lifecycle: AssetLifecycle = Depends(get_lifecycle),
) -> ExtractionCallbackResponse:
    applied = await lifecycle.complete_extraction(
        asset_id=asset_id,
        content=body.content,
        total_pages=body.total_pages,
    )
    return ExtractionCallbackResponse(asset_id=asset_id, applied=applied)


@router.post(
    "/{asset_id}/failure",
    response_model=ExtractionCallbackResponse,
    summary="Report a failed extraction",
)
async def report_failure(
    asset_id: UUID,
    body: ExtractionFailureRequest,
    lifecycle: AssetLifecycle = Depends(get_lifecycle),
) -> ExtractionCallbackResponse:
    applied = await lifecycle.fail_extraction(asset_id=asset_id, reason=body.reason)
    return ExtractionCallbackResponse(asset_id=asset_id, applied=applied)
