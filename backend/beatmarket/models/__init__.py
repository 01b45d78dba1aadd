"""
BeatMarket data models.

Document models mirror MongoDB records; API models serialize as camelCase.
"""

from beatmarket.models.listing import Listing, SearchResponse
from beatmarket.models.purchase import (
    CheckoutResponse,
    CreditPurchaseRequest,
    DownloadGrant,
    Purchase,
    WebhookOutcome,
)
from beatmarket.models.upload import (
    Asset,
    FinalizeResult,
    InitiateResult,
    Tag,
    TagFeedback,
    Upload,
    UploadErrorEvent,
    UploadStatus,
    UploadSummary,
)
from beatmarket.models.user import CurrentUser, UserProfile
from beatmarket.models.wallet import (
    Transaction,
    TransactionKind,
    TransactionView,
    Wallet,
    WalletResponse,
)


__all__ = [
    "Asset",
    "CheckoutResponse",
    "CreditPurchaseRequest",
    "CurrentUser",
    "DownloadGrant",
    "FinalizeResult",
    "InitiateResult",
    "Listing",
    "Purchase",
    "SearchResponse",
    "Tag",
    "TagFeedback",
    "Transaction",
    "TransactionKind",
    "TransactionView",
    "Upload",
    "UploadErrorEvent",
    "UploadStatus",
    "UploadSummary",
    "UserProfile",
    "Wallet",
    "WalletResponse",
]
