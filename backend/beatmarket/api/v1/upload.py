"""
BeatMarket Upload API Router

Two-step upload of an original:

    POST /upload/init      reserve an upload and get a one-time PUT URL
    POST /upload/finalize  derive the preview and metadata after the PUT

The file itself never passes through the API: the client writes it straight
to object storage with the returned URL and headers.
"""

import logging

from fastapi import APIRouter, Depends, status

from beatmarket.api.v1.dependencies import get_upload_service
from beatmarket.core.auth import get_current_user
from beatmarket.models.upload import (
    FinalizeResult,
    FinalizeUploadRequest,
    InitiateResult,
    InitiateUploadRequest,
)
from beatmarket.models.user import CurrentUser
from beatmarket.services.upload_service import UploadService


logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["upload"],
    responses={401: {"description": "Authentication required"}},
)


@router.post(
    "/init",
    response_model=InitiateResult,
    status_code=status.HTTP_201_CREATED,
    summary="Start an upload",
    responses={400: {"description": "Missing title or unsupported file type"}},
)
async def init_upload(
    request: InitiateUploadRequest,
    current_user: CurrentUser = Depends(get_current_user),
    upload_service: UploadService = Depends(get_upload_service),
) -> InitiateResult:
    """
    Reserve an upload for the caller.

    Returns a presigned PUT URL valid for at most 60 seconds. The URL can only
    create the original; it cannot overwrite an existing object.
    """
    logger.info("Upload init from user %s: %s", current_user.id, request.filename)
    return await upload_service.initiate(
        current_user.id,
        request.title,
        request.filename,
        price_cents=request.price_cents,
    )


@router.post(
    "/finalize",
    response_model=FinalizeResult,
    summary="Finalize an upload",
    responses={
        404: {"description": "Upload not found or not owned by the caller"},
        409: {"description": "Upload is already being processed"},
        500: {"description": "Preview could not be derived"},
    },
)
async def finalize_upload(
    request: FinalizeUploadRequest,
    current_user: CurrentUser = Depends(get_current_user),
    upload_service: UploadService = Depends(get_upload_service),
) -> FinalizeResult:
    """
    Transcode the preview, detect BPM and move the upload to ``pending``.

    Repeating the call on a finished upload returns the stored result.
    """
    return await upload_service.finalize(request.upload_id, user_id=current_user.id)
