"""
Purchase and Checkout Models for BeatMarket.
"""

from datetime import datetime

from pydantic import Field

from beatmarket.models.base import CamelModel, DocumentModel
from beatmarket.models.upload import new_id, utc_now


class Purchase(DocumentModel):
    """
    Immutable audit row written after a successful credit spend.

    ``listing_id`` is the upload id of the purchased listing.
    """

    id: str = Field(default_factory=new_id, alias="_id")
    user_id: str
    listing_id: str
    credits_spent: int = Field(..., ge=0)
    price_cents: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=utc_now)


class DownloadGrant(CamelModel):
    """A short-lived read URL for a purchased original."""

    download_url: str
    credits_spent: int
    remaining_balance: int
    purchase_id: str
    expires_in: int


class CreditPurchaseRequest(CamelModel):
    credits: int


class CheckoutResponse(CamelModel):
    checkout_url: str


class WebhookOutcome(CamelModel):
    """Acknowledgement of a payment provider event."""

    received: bool = True
    applied: bool = False
