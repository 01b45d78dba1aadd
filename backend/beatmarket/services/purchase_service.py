"""
Purchase Service for BeatMarket

Exchanges credits for a short-lived download URL of a published original.

Order of operations:
1. resolve the listing (published upload and its asset)
2. pre-sign the read URL; if signing fails nothing has been charged
3. spend the credits atomically in the ledger
4. append the purchase record, retrying once; if it cannot be written the
   spend is refunded and the request fails closed
"""

import logging
import math

from pymongo.errors import DuplicateKeyError

from beatmarket.config import Settings, get_settings
from beatmarket.core.database import DatabaseClient
from beatmarket.core.errors import BeatMarketError, UpstreamError
from beatmarket.core.storage import StorageClient
from beatmarket.models.purchase import DownloadGrant, Purchase
from beatmarket.models.wallet import TransactionKind
from beatmarket.services.catalog_service import CatalogService
from beatmarket.services.ledger_service import LedgerService


CENTS_PER_CREDIT = 100
PURCHASE_INSERT_ATTEMPTS = 2


def credits_for_price(price_cents: int) -> int:
    """One credit per started 100 cents. A free listing costs nothing."""
    return math.ceil(price_cents / CENTS_PER_CREDIT)


class PurchaseService:
    """
    Credit-gated downloads.

    Attributes:
        db_client: Connected DatabaseClient
        ledger: Credit ledger used to spend and refund
        catalog: Catalog used to resolve listings
        storage: Storage gateway for the download URL
        settings: Application settings (signed URL lifetime)
    """

    def __init__(
        self,
        db_client: DatabaseClient,
        ledger: LedgerService,
        catalog: CatalogService,
        storage: StorageClient,
        settings: Settings | None = None,
    ) -> None:
        self.db_client = db_client
        self.ledger = ledger
        self.catalog = catalog
        self.storage = storage
        self.settings = settings or get_settings()
        self.logger = logging.getLogger(__name__)

    async def request_download(self, user_id: str, listing_id: str) -> DownloadGrant:
        """
        Charge the buyer and return a download URL for the original.

        Args:
            user_id: Buyer.
            listing_id: Id of a published upload.

        Returns:
            DownloadGrant: URL, credits spent, remaining balance, purchase id
            and URL lifetime.

        Raises:
            NotFoundError: If the listing is not published.
            InsufficientFundsError: If the buyer cannot cover the price.
            UpstreamError: If signing, the ledger or the purchase record fails.
        """
        upload, asset = await self.catalog.get_purchasable(listing_id)
        credits = credits_for_price(upload.price_cents)
        expires_in = self.settings.signed_url_expiration_seconds

        try:
            download_url = await self.storage.create_download_url(
                asset.original_path, expires_in=expires_in
            )
        except BeatMarketError:
            raise
        except Exception as error:
            self.logger.exception("Failed to sign download URL for listing %s", listing_id)
            raise UpstreamError("Failed to create download URL") from error

        if credits > 0:
            remaining = await self.ledger.spend(
                user_id, credits, description=f"Download: {upload.title}"
            )
        else:
            remaining = (await self.ledger.get_wallet(user_id)).balance

        purchase = Purchase(
            user_id=user_id,
            listing_id=listing_id,
            credits_spent=credits,
            price_cents=upload.price_cents,
        )
        await self._record_purchase(purchase)

        self.logger.info(
            "Purchase %s: user %s bought %s for %d credits",
            purchase.id,
            user_id,
            listing_id,
            credits,
        )
        return DownloadGrant(
            download_url=download_url,
            credits_spent=credits,
            remaining_balance=remaining,
            purchase_id=purchase.id,
            expires_in=expires_in,
        )

    async def _record_purchase(self, purchase: Purchase) -> None:
        """Insert the purchase row, refunding the spend if it cannot be stored."""
        purchases = self.db_client.get_purchases_collection()
        last_error: Exception | None = None

        for attempt in range(1, PURCHASE_INSERT_ATTEMPTS + 1):
            try:
                await purchases.insert_one(purchase.model_dump(by_alias=True))
                return
            except DuplicateKeyError:
                # An earlier attempt landed but its acknowledgement was lost
                self.logger.info("Purchase %s already recorded", purchase.id)
                return
            except Exception as error:
                last_error = error
                self.logger.warning(
                    "Purchase insert attempt %d/%d failed for %s",
                    attempt,
                    PURCHASE_INSERT_ATTEMPTS,
                    purchase.id,
                    exc_info=True,
                )

        if purchase.credits_spent > 0:
            await self.ledger.earn(
                purchase.user_id,
                purchase.credits_spent,
                external_ref=purchase.id,
                kind=TransactionKind.REFUND,
                description=f"Refund: purchase of {purchase.listing_id} not recorded",
            )
        raise UpstreamError("Failed to record purchase") from last_error
