"""
BeatMarket Wallet Router

    GET /wallet               the caller's credit balance and totals
    GET /wallet/transactions  the caller's ledger rows, newest first
"""

from fastapi import APIRouter, Depends, Query

from beatmarket.api.v1.dependencies import get_ledger_service
from beatmarket.core.auth import get_current_user
from beatmarket.models.base import CamelModel
from beatmarket.models.user import CurrentUser
from beatmarket.models.wallet import TransactionView, WalletResponse
from beatmarket.services.ledger_service import LedgerService


router = APIRouter(
    tags=["wallet"],
    responses={401: {"description": "Authentication required"}},
)


class TransactionListResponse(CamelModel):
    transactions: list[TransactionView]


@router.get("", response_model=WalletResponse, summary="Get my wallet")
async def get_wallet(
    current_user: CurrentUser = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> WalletResponse:
    wallet = await ledger.get_wallet(current_user.id)
    return WalletResponse.from_wallet(wallet)


@router.get(
    "/transactions",
    response_model=TransactionListResponse,
    summary="List my transactions",
)
async def list_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    current_user: CurrentUser = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> TransactionListResponse:
    transactions = await ledger.list_transactions(current_user.id, limit=limit)
    return TransactionListResponse(
        transactions=[TransactionView.from_transaction(item) for item in transactions]
    )
