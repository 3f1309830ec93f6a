"""Student Schemas Package"""
from .wallets import (
    TokenGrantRead,
    TokenWalletRead,
    WalletOverview,
    AssignTokensRequest,
    AssignTokensResponse,
    TransferTokensRequest,
    TransferTokensResponse,
    SweepResponse,
    TokenHistoryResponse,
)

from .payments import (
    PurchaseTokensRequest,
    PaymentRead,
    ConfirmPurchaseRequest,
    ConfirmPurchaseResponse,
    PaymentListResponse,
)

from .bookings import (
    BookingCreate,
    BookingCancel,
    CheckInRequest,
    NoShowRequest,
    BookingRead,
    WaitlistEntryRead,
    BookingResultRead,
    BookingCancelResponse,
    BookingFilters,
    BookingListResponse,
    WaitlistResponse,
    BookingStats,
)

__all__ = [
    # Wallets
    "TokenGrantRead",
    "TokenWalletRead",
    "WalletOverview",
    "AssignTokensRequest",
    "AssignTokensResponse",
    "TransferTokensRequest",
    "TransferTokensResponse",
    "SweepResponse",
    "TokenHistoryResponse",
    # Payments
    "PurchaseTokensRequest",
    "PaymentRead",
    "ConfirmPurchaseRequest",
    "ConfirmPurchaseResponse",
    "PaymentListResponse",
    # Bookings
    "BookingCreate",
    "BookingCancel",
    "CheckInRequest",
    "NoShowRequest",
    "BookingRead",
    "WaitlistEntryRead",
    "BookingResultRead",
    "BookingCancelResponse",
    "BookingFilters",
    "BookingListResponse",
    "WaitlistResponse",
    "BookingStats",
]
