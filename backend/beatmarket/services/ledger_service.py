"""
Credit Ledger Service for BeatMarket

Owns every write to ``wallets`` and ``transactions``.

Guarantees:
- ``spend`` is one conditional ``find_one_and_update`` guarded by
  ``balance >= amount``, so concurrent spends against one wallet serialize in
  MongoDB and the balance never goes negative
- ``earn`` records its transaction under a unique ``external_ref``; a
  duplicate key means the event was already applied and nothing changes
- the wallet update and its transaction row commit in one MongoDB
  transaction, so a balance never changes without its row and rows are never
  deleted
"""

import logging

from datetime import UTC, datetime
from typing import Any

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from beatmarket.core.database import DatabaseClient
from beatmarket.core.errors import (
    BeatMarketError,
    InsufficientFundsError,
    LedgerError,
    ValidationError,
)
from beatmarket.models.upload import new_id
from beatmarket.models.wallet import Transaction, TransactionKind, Wallet


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive whole number of credits", amount=amount)
    return amount


class LedgerService:
    """
    Atomic credit wallet operations.

    Attributes:
        db_client: Connected DatabaseClient
        logger: Logger instance for ledger operations

    Example:
        ```python
        ledger = LedgerService(get_db_client())
        await ledger.earn("user_1", 10, external_ref="pi_123")
        balance = await ledger.spend("user_1", 5, description="Download: Night Drive")
        ```
    """

    def __init__(self, db_client: DatabaseClient) -> None:
        self.db_client = db_client
        self.logger = logging.getLogger(__name__)

    # =========================================================================
    # Spend
    # =========================================================================

    async def spend(self, user_id: str, amount: int, description: str | None = None) -> int:
        """
        Deduct credits if and only if the balance covers them.

        The guarded decrement and its transaction row commit together or not
        at all.

        Args:
            user_id: Wallet owner.
            amount: Positive number of credits.
            description: Optional text stored on the transaction row.

        Returns:
            int: The balance after the spend.

        Raises:
            ValidationError: If amount is not a positive integer.
            InsufficientFundsError: If the balance is below ``amount``.
            LedgerError: If the database write fails.
        """
        amount = _validate_amount(amount)
        wallets = self.db_client.get_wallets_collection()
        transactions = self.db_client.get_transactions_collection()
        transaction = Transaction(
            user_id=user_id,
            kind=TransactionKind.SPEND,
            amount=amount,
            external_ref=f"{TransactionKind.SPEND.value}:{new_id()}",
            description=description,
        )

        async def _debit(session: Any) -> int:
            wallet = await wallets.find_one_and_update(
                {"user_id": user_id, "balance": {"$gte": amount}},
                {
                    "$inc": {"balance": -amount, "total_spent": amount},
                    "$set": {"updated_at": datetime.now(UTC)},
                },
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if wallet is None:
                current = await wallets.find_one({"user_id": user_id}, session=session)
                raise InsufficientFundsError(
                    credits_needed=amount,
                    credits_available=int(current["balance"]) if current else 0,
                )
            await transactions.insert_one(transaction.model_dump(by_alias=True), session=session)
            return int(wallet["balance"])

        try:
            new_balance = await self.db_client.run_in_transaction(_debit)
        except InsufficientFundsError as error:
            self.logger.info(
                "Insufficient credits for user %s: needed=%d available=%d",
                user_id,
                amount,
                error.credits_available,
            )
            raise
        except Exception as error:
            self.logger.exception("Spend of %d credits failed for user %s", amount, user_id)
            raise LedgerError("Failed to spend credits") from error

        self.logger.info("User %s spent %d credits, balance=%d", user_id, amount, new_balance)
        return new_balance

    # =========================================================================
    # Earn
    # =========================================================================

    async def earn(
        self,
        user_id: str,
        amount: int,
        external_ref: str,
        kind: TransactionKind = TransactionKind.TOPUP,
        description: str | None = None,
    ) -> bool:
        """
        Credit a wallet exactly once per ``(kind, external_ref)``.

        The transaction row and the wallet increment commit in one MongoDB
        transaction. A unique ``external_ref`` that is already committed means
        the credit was applied before; a failed attempt leaves neither write
        behind, so a replay of the same reference applies it.

        Args:
            user_id: Wallet owner. The wallet is created when missing.
            amount: Positive number of credits.
            external_ref: Payment id for top-ups, purchase id for refunds.
            kind: ``topup`` or ``refund``.
            description: Optional text stored on the transaction row.

        Returns:
            bool: True if applied, False if this reference was already applied.

        Raises:
            ValidationError: On a bad amount, kind or empty reference.
            LedgerError: If the database write fails.
        """
        amount = _validate_amount(amount)
        kind = TransactionKind(kind)
        if kind == TransactionKind.SPEND:
            raise ValidationError("Spends must go through spend()")
        if not external_ref:
            raise ValidationError("An external reference is required")

        transaction = Transaction(
            user_id=user_id,
            kind=kind,
            amount=amount,
            external_ref=f"{kind.value}:{external_ref}",
            description=description,
        )
        wallets = self.db_client.get_wallets_collection()
        transactions = self.db_client.get_transactions_collection()

        async def _credit(session: Any) -> None:
            now = datetime.now(UTC)
            await transactions.insert_one(transaction.model_dump(by_alias=True), session=session)
            await wallets.update_one(
                {"user_id": user_id},
                {
                    "$inc": {"balance": amount, "total_earned": amount},
                    "$set": {"updated_at": now},
                    "$setOnInsert": {"created_at": now, "total_spent": 0},
                },
                upsert=True,
                session=session,
            )

        try:
            await self.db_client.run_in_transaction(_credit)
        except DuplicateKeyError as error:
            if await self._is_recorded(transaction.external_ref):
                self.logger.info("Ledger reference %s already applied", transaction.external_ref)
                return False
            self.logger.exception("Unexpected duplicate key crediting user %s", user_id)
            raise LedgerError("Failed to credit wallet") from error
        except Exception as error:
            self.logger.exception("Failed to credit %s for user %s", kind.value, user_id)
            raise LedgerError("Failed to credit wallet") from error

        self.logger.info(
            "Credited %d credits to user %s (%s %s)",
            amount,
            user_id,
            kind.value,
            external_ref,
        )
        return True

    async def _is_recorded(self, external_ref: str) -> bool:
        try:
            row = await self.db_client.get_transactions_collection().find_one(
                {"external_ref": external_ref}
            )
        except Exception as error:
            raise LedgerError("Failed to read ledger") from error
        return row is not None

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_wallet(self, user_id: str) -> Wallet:
        """Return the user's wallet, or an empty one if they never had credits."""
        try:
            document = await self.db_client.get_wallets_collection().find_one({"user_id": user_id})
        except BeatMarketError:
            raise
        except Exception as error:
            self.logger.exception("Failed to read wallet for user %s", user_id)
            raise LedgerError("Failed to read wallet") from error

        if document is None:
            return Wallet(user_id=user_id)
        return Wallet(**document)

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[Transaction]:
        """Return the user's ledger rows, newest first."""
        cursor = (
            self.db_client.get_transactions_collection()
            .find({"user_id": user_id})
            .sort("created_at", DESCENDING)
            .limit(limit)
        )
        documents = await cursor.to_list(length=limit)
        return [Transaction(**document) for document in documents]
