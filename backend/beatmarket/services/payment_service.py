"""
Payment Service for BeatMarket

Adapter for a Stripe-style payment provider:
- ``create_checkout`` opens a hosted Checkout Session for a credit package
- ``verify_webhook`` authenticates provider callbacks
- ``handle_event`` credits the buyer's wallet once per payment

Only one package (``credit_package_size`` credits) and one currency are sold.
The provider retries webhooks until it receives a 2xx, so duplicate deliveries
are expected; the ledger's idempotent ``earn`` turns them into no-ops.
"""

import logging

from typing import Any

import httpx

from beatmarket.config import Settings, get_settings
from beatmarket.core.errors import PaymentProviderError, UpstreamError, ValidationError
from beatmarket.models.purchase import WebhookOutcome
from beatmarket.models.wallet import TransactionKind
from beatmarket.services.ledger_service import LedgerService
from beatmarket.utils.security import verify_webhook_signature


CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
PAID_STATUS = "paid"
PROVIDER_TIMEOUT_SECONDS = 15.0


class PaymentService:
    """
    Checkout sessions and webhook handling.

    Attributes:
        ledger: Credit ledger credited on completed payments
        settings: Application settings with provider credentials
        transport: Optional httpx transport (tests inject a mock transport)
    """

    def __init__(
        self,
        ledger: LedgerService,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.transport = transport
        self.logger = logging.getLogger(__name__)

    async def create_checkout(self, user_id: str, credits: int) -> str:
        """
        Create a Checkout Session for the credit package and return its URL.

        Args:
            user_id: Buyer; echoed back by the provider as ``client_reference_id``.
            credits: Requested package size. Only the configured size is sold.

        Raises:
            ValidationError: If ``credits`` is not the package size.
            PaymentProviderError: If the provider is unconfigured or rejects the request.
        """
        if credits != self.settings.credit_package_size:
            raise ValidationError(
                f"Credits must be {self.settings.credit_package_size}",
                field="credits",
            )
        if not self.settings.is_stripe_configured:
            raise PaymentProviderError("Payments are not configured")

        form = {
            "mode": "payment",
            "line_items[0][price_data][currency]": self.settings.currency,
            "line_items[0][price_data][unit_amount]": str(
                self.settings.credit_package_price_cents
            ),
            "line_items[0][price_data][product_data][name]": f"{credits} BeatMarket credits",
            "line_items[0][quantity]": "1",
            "success_url": self.settings.checkout_success_url,
            "cancel_url": self.settings.checkout_cancel_url,
            "client_reference_id": user_id,
            "metadata[user_id]": user_id,
            "metadata[credits]": str(credits),
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.settings.stripe_api_base,
                timeout=PROVIDER_TIMEOUT_SECONDS,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    "/checkout/sessions",
                    data=form,
                    headers={"Authorization": f"Bearer {self.settings.stripe_secret_key}"},
                )
        except httpx.HTTPError as error:
            self.logger.exception("Checkout session request failed")
            raise PaymentProviderError("Payment provider unavailable") from error

        if response.status_code >= 400:
            self.logger.error(
                "Checkout session rejected with HTTP %d: %s",
                response.status_code,
                response.text[:500],
            )
            raise PaymentProviderError("Payment provider rejected the checkout request")

        checkout_url = response.json().get("url")
        if not checkout_url:
            raise PaymentProviderError("Payment provider returned no checkout URL")

        self.logger.info("Checkout session created for user %s (%d credits)", user_id, credits)
        return checkout_url

    def verify_webhook(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """
        Authenticate a webhook body and return the event.

        Raises:
            WebhookSignatureError: If the signature does not verify.
            UpstreamError: If no webhook secret is configured.
        """
        if not self.settings.stripe_webhook_secret:
            raise UpstreamError("Webhook secret is not configured")

        return verify_webhook_signature(
            payload,
            signature_header,
            self.settings.stripe_webhook_secret,
            tolerance_seconds=self.settings.webhook_tolerance_seconds,
        )

    async def handle_event(self, event: dict[str, Any]) -> WebhookOutcome:
        """
        Apply a verified provider event.

        Completed and paid checkout sessions credit ``amount_total // 100``
        credits keyed by the payment id. Every other event is acknowledged.

        Raises:
            LedgerError: If the wallet cannot be credited; the provider retries.
        """
        event_type = event.get("type")
        if event_type != CHECKOUT_COMPLETED_EVENT:
            self.logger.debug("Ignoring webhook event %s", event_type)
            return WebhookOutcome(received=True, applied=False)

        session = (event.get("data") or {}).get("object") or {}
        if session.get("payment_status") != PAID_STATUS:
            self.logger.info("Checkout session %s not paid yet", session.get("id"))
            return WebhookOutcome(received=True, applied=False)

        user_id = session.get("client_reference_id") or (session.get("metadata") or {}).get(
            "user_id"
        )
        amount_total = session.get("amount_total")
        payment_ref = session.get("payment_intent") or session.get("id")
        if not user_id or not isinstance(amount_total, int) or not payment_ref:
            self.logger.error("Checkout session %s is missing buyer or amount", session.get("id"))
            return WebhookOutcome(received=True, applied=False)

        credits = amount_total // self.settings.credit_unit_price_cents
        if credits <= 0:
            return WebhookOutcome(received=True, applied=False)

        applied = await self.ledger.earn(
            user_id,
            credits,
            external_ref=payment_ref,
            kind=TransactionKind.TOPUP,
            description=f"Purchased {credits} credits",
        )
        return WebhookOutcome(received=True, applied=applied)
