from .wallets import TokenWallet, TokenGrant, GrantSource
from .bookings import (
    Booking,
    BookingStatus,
    CheckInMethod,
    WaitlistEntry,
    SEAT_HOLDING_STATUSES,
)
from .payments import Payment, PaymentStatus

__all__ = [
    "TokenWallet",
    "TokenGrant",
    "GrantSource",
    "Booking",
    "BookingStatus",
    "CheckInMethod",
    "WaitlistEntry",
    "SEAT_HOLDING_STATUSES",
    "Payment",
    "PaymentStatus",
]
