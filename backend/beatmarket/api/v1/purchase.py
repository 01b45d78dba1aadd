"""
BeatMarket Credit Purchase Router

    POST /purchase/credits  open a hosted checkout for a credit package
"""

from fastapi import APIRouter, Depends

from beatmarket.api.v1.dependencies import get_payment_service
from beatmarket.core.auth import get_current_user
from beatmarket.models.purchase import CheckoutResponse, CreditPurchaseRequest
from beatmarket.models.user import CurrentUser
from beatmarket.services.payment_service import PaymentService


router = APIRouter(
    tags=["purchase"],
    responses={401: {"description": "Authentication required"}},
)


@router.post(
    "/credits",
    response_model=CheckoutResponse,
    summary="Buy credits",
    responses={
        400: {"description": "Unsupported credit package"},
        502: {"description": "Payment provider error"},
    },
)
async def purchase_credits(
    request: CreditPurchaseRequest,
    current_user: CurrentUser = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> CheckoutResponse:
    """Credits are added by the provider's webhook once the payment completes."""
    checkout_url = await payment_service.create_checkout(current_user.id, request.credits)
    return CheckoutResponse(checkout_url=checkout_url)
