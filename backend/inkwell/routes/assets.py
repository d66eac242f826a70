"""
Inkwell Backend: Asset Route Handlers
=====================================

What:  Client-facing asset endpoints.
How:   Thin handlers: read the caller's identity, delegate to
       AssetLifecycle, shape the response. Error mapping is done by the
       global exception handlers registered in main.py.
Who:   Called by the web and mobile clients.

Upload flow as seen by a client:
    1. POST /api/assets/upload-intents        → asset_id, storage_key, expires_at
    2. PUT bytes to the blob store under storage_key (out-of-band)
    3. POST /api/assets/{asset_id}/confirm    → UPLOADED, extraction processing
    4. GET  /api/assets/{asset_id}            → poll until completed | failed
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from inkwell.schemas.asset import (
    AssetDetailResponse,
    ErrorResponse,
    UploadConfirmResponse,
    UploadIntentRequest,
    UploadIntentResponse,
)
from inkwell.routes.dependencies import get_current_user_id, get_lifecycle
from inkwell.services.asset_lifecycle import AssetLifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assets", tags=["Assets"])


@router.post(
    "/upload-intents",
    response_model=UploadIntentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Invalid file or note quota exceeded", "model": ErrorResponse},
        403: {"description": "Caller does not own the note", "model": ErrorResponse},
    },
    summary="Announce an upload",
)
async def create_upload_intent(
    body: UploadIntentRequest,
    user_id: UUID = Depends(get_current_user_id),
    lifecycle: AssetLifecycle = Depends(get_lifecycle),
) -> UploadIntentResponse:
    intent = await lifecycle.create_upload_intent(
        owner_id=user_id,
        note_id=body.note_id,
        file_name=body.file_name,
        mime_type=body.mime_type,
        file_size=body.file_size,
    )
    return UploadIntentResponse(
        asset_id=intent.asset_id,
        storage_key=intent.storage_key,
        expires_at=intent.expires_at,
    )


@router.post(
    "/{asset_id}/confirm",
    response_model=UploadConfirmResponse,
    responses={
        400: {"description": "Blob not uploaded yet; retry after uploading", "model": ErrorResponse},
        403: {"description": "Not the asset owner", "model": ErrorResponse},
        404: {"description": "Asset not found", "model": ErrorResponse},
        409: {"description": "Already confirmed or intent expired", "model": ErrorResponse},
    },
    summary="Confirm an upload and start text extraction",
)
async def confirm_upload(
    asset_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    lifecycle: AssetLifecycle = Depends(get_lifecycle),
) -> UploadConfirmResponse:
    """
    Confirm the blob is uploaded.

    Succeeds exactly once per asset. Extraction runs asynchronously; a
    dispatch failure is recorded on the asset, never returned here.
    """
    snapshot = await lifecycle.confirm_upload(asset_id=asset_id, owner_id=user_id)
    return UploadConfirmResponse.from_snapshot(snapshot)


@router.get(
    "/{asset_id}",
    response_model=AssetDetailResponse,
    responses={
        403: {"description": "Not the asset owner", "model": ErrorResponse},
        404: {"description": "Asset not found", "model": ErrorResponse},
    },
    summary="Get an asset and its extraction result",
)
async def get_asset(
    asset_id: UUID,
    response: Response,
    user_id: UUID = Depends(get_current_user_id),
    lifecycle: AssetLifecycle = Depends(get_lifecycle),
) -> AssetDetailResponse:
    snapshot = await lifecycle.get_asset_detail(asset_id=asset_id, owner_id=user_id)
    # Extraction status changes while clients poll
    response.headers["Cache-Control"] = "private, no-cache"
    return AssetDetailResponse.from_snapshot(snapshot)


@router.delete(
    "/{asset_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        403: {"description": "Not the asset owner", "model": ErrorResponse},
        404: {"description": "Asset not found", "model": ErrorResponse},
    },
    summary="Delete an asset and its blobs",
)
async def delete_asset(
    asset_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    lifecycle: AssetLifecycle = Depends(get_lifecycle),
) -> Response:
    await lifecycle.delete_asset(asset_id=asset_id, owner_id=user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
