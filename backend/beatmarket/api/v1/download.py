"""
BeatMarket Download Router

    POST /download/{listing_id}  spend credits and get a 60 second URL for the original
"""

import logging

from fastapi import APIRouter, Depends

from beatmarket.api.v1.dependencies import get_purchase_service
from beatmarket.core.auth import get_current_user
from beatmarket.models.purchase import DownloadGrant
from beatmarket.models.user import CurrentUser
from beatmarket.services.purchase_service import PurchaseService


logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["download"],
    responses={401: {"description": "Authentication required"}},
)


@router.post(
    "/{listing_id}",
    response_model=DownloadGrant,
    summary="Buy and download an original",
    responses={
        402: {"description": "Insufficient credits; body carries creditsNeeded/creditsAvailable"},
        404: {"description": "Listing not found"},
    },
)
async def download_listing(
    listing_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    purchase_service: PurchaseService = Depends(get_purchase_service),
) -> DownloadGrant:
    """
    Charge ``ceil(price_cents / 100)`` credits and return a signed download URL.

    Nothing is charged when the listing is missing, the buyer cannot pay or
    the URL cannot be signed.
    """
    logger.info("Download of %s requested by %s", listing_id, current_user.id)
    return await purchase_service.request_download(current_user.id, listing_id)
