"""
BeatMarket Tag Feedback Router

    POST /feedback/tag  suggest a correction to a derived tag (e.g. BPM)
"""

from fastapi import APIRouter, Depends

from beatmarket.api.v1.dependencies import get_upload_service
from beatmarket.core.auth import get_current_user
from beatmarket.models.base import CamelModel
from beatmarket.models.upload import TagFeedbackRequest
from beatmarket.models.user import CurrentUser
from beatmarket.services.upload_service import UploadService


router = APIRouter(
    tags=["feedback"],
    responses={401: {"description": "Authentication required"}},
)


class TagFeedbackResponse(CamelModel):
    success: bool = True


@router.post(
    "/tag",
    response_model=TagFeedbackResponse,
    summary="Suggest a tag correction",
    responses={404: {"description": "Upload not found"}},
)
async def submit_tag_feedback(
    request: TagFeedbackRequest,
    current_user: CurrentUser = Depends(get_current_user),
    upload_service: UploadService = Depends(get_upload_service),
) -> TagFeedbackResponse:
    await upload_service.submit_tag_feedback(
        current_user.id, request.upload_id, request.name, request.value
    )
    return TagFeedbackResponse()
