"""
BeatMarket Creator Dashboard Router

    GET   /uploads             the caller's uploads with their credit balance
    PATCH /uploads/{upload_id} publish or unpublish an upload
"""

import logging

from datetime import datetime

from fastapi import APIRouter, Depends

from beatmarket.api.v1.dependencies import get_ledger_service, get_upload_service
from beatmarket.core.auth import get_current_user
from beatmarket.models.base import CamelModel
from beatmarket.models.upload import UpdateUploadStatusRequest, UploadStatus, UploadSummary
from beatmarket.models.user import CurrentUser
from beatmarket.services.ledger_service import LedgerService
from beatmarket.services.upload_service import UploadService


logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["uploads"],
    responses={401: {"description": "Authentication required"}},
)


class UploadView(CamelModel):
    id: str
    title: str
    status: UploadStatus
    price_cents: int
    updated_at: datetime


class UpdateUploadStatusResponse(CamelModel):
    success: bool = True
    upload: UploadView


class DashboardResponse(CamelModel):
    uploads: list[UploadSummary]
    credits: int


@router.get("", response_model=DashboardResponse, summary="List my uploads")
async def list_uploads(
    current_user: CurrentUser = Depends(get_current_user),
    upload_service: UploadService = Depends(get_upload_service),
    ledger: LedgerService = Depends(get_ledger_service),
) -> DashboardResponse:
    uploads = await upload_service.list_user_uploads(current_user.id)
    wallet = await ledger.get_wallet(current_user.id)
    return DashboardResponse(uploads=uploads, credits=wallet.balance)


@router.patch(
    "/{upload_id}",
    response_model=UpdateUploadStatusResponse,
    summary="Publish or unpublish an upload",
    responses={
        400: {"description": "Status must be published or pending"},
        404: {"description": "Upload not found or access denied"},
        409: {"description": "Upload is still uploading or processing"},
    },
)
async def update_upload_status(
    upload_id: str,
    request: UpdateUploadStatusRequest,
    current_user: CurrentUser = Depends(get_current_user),
    upload_service: UploadService = Depends(get_upload_service),
) -> UpdateUploadStatusResponse:
    """Only the owner may change an upload, and only between published and pending."""
    upload = await upload_service.set_status(upload_id, current_user.id, request.status)
    return UpdateUploadStatusResponse(
        upload=UploadView(
            id=upload.id,
            title=upload.title,
            status=upload.status,
            price_cents=upload.price_cents,
            updated_at=upload.updated_at,
        )
    )
