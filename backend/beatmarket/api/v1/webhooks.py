"""
BeatMarket Payment Webhook Router

    POST /webhooks/stripe  signed payment provider events

The body is read raw because the signature covers the exact bytes sent.
Duplicates and ignored events are acknowledged with 200; a ledger failure
returns 500 so the provider retries.
"""

import logging

from fastapi import APIRouter, Depends, Header, Request

from beatmarket.api.v1.dependencies import get_payment_service
from beatmarket.models.purchase import WebhookOutcome
from beatmarket.services.payment_service import PaymentService


logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookOutcome,
    summary="Payment provider webhook",
    responses={400: {"description": "Invalid signature"}},
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    payment_service: PaymentService = Depends(get_payment_service),
) -> WebhookOutcome:
    payload = await request.body()
    event = payment_service.verify_webhook(payload, stripe_signature)

    logger.info("Webhook event %s (%s)", event.get("id"), event.get("type"))
    return await payment_service.handle_event(event)
