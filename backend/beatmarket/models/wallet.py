"""
Credit Wallet and Ledger Models for BeatMarket.

Credits are whole numbers. A Wallet holds the running totals for one user and
every change to it is mirrored by exactly one immutable Transaction row. The
``external_ref`` of a transaction is unique across the collection and is how
repeated payment notifications are recognized.
"""

from datetime import datetime
from enum import Enum

from pydantic import Field

from beatmarket.models.base import CamelModel, DocumentModel
from beatmarket.models.upload import new_id, utc_now


class TransactionKind(str, Enum):
    """
    Kinds of ledger movement.

    Attributes:
        TOPUP: Credits bought through the payment provider.
        SPEND: Credits spent on a download.
        REFUND: Credits returned after a failed purchase.
    """

    TOPUP = "topup"
    SPEND = "spend"
    REFUND = "refund"


class Wallet(DocumentModel):
    """
    Credit balance of one user in the ``wallets`` collection.

    ``balance``, ``total_earned`` and ``total_spent`` always change together
    in a single atomic update and ``balance`` never drops below zero.
    """

    user_id: str
    balance: int = Field(default=0, ge=0)
    total_earned: int = Field(default=0, ge=0)
    total_spent: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Transaction(DocumentModel):
    """Immutable ledger row in the ``transactions`` collection."""

    id: str = Field(default_factory=new_id, alias="_id")
    user_id: str
    kind: TransactionKind
    amount: int = Field(..., gt=0)
    external_ref: str
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class WalletResponse(CamelModel):
    credits: int
    total_earned: int
    total_spent: int

    @classmethod
    def from_wallet(cls, wallet: Wallet) -> "WalletResponse":
        return cls(
            credits=wallet.balance,
            total_earned=wallet.total_earned,
            total_spent=wallet.total_spent,
        )


class TransactionView(CamelModel):
    """A ledger row as shown to its owner."""

    id: str
    kind: TransactionKind
    amount: int
    description: str | None = None
    created_at: datetime

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionView":
        return cls(
            id=transaction.id,
            kind=transaction.kind,
            amount=transaction.amount,
            description=transaction.description,
            created_at=transaction.created_at,
        )
