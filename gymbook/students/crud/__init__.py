"""Student CRUD Package"""
from .tokens import (
    SweepResult,
    get_wallet,
    ensure_wallet,
    get_or_create_wallet,
    get_wallet_overview,
    get_token_history,
    consume_tokens,
    refund_tokens,
    assign_tokens,
    transfer_tokens,
    sweep_expired_grants,
)

from .payments import (
    purchase_tokens,
    confirm_purchase,
    get_user_payments,
)

from .waitlist import (
    enqueue,
    promote_waitlist,
    leave_waitlist,
    get_waitlist,
)

from .bookings import (
    BookingResult,
    can_refund,
    create_booking,
    cancel_booking,
    check_in,
    mark_no_show,
    get_user_bookings,
    get_session_bookings,
    get_booking_stats,
)

__all__ = [
    # Tokens
    "SweepResult",
    "get_wallet",
    "ensure_wallet",
    "get_or_create_wallet",
    "get_wallet_overview",
    "get_token_history",
    "consume_tokens",
    "refund_tokens",
    "assign_tokens",
    "transfer_tokens",
    "sweep_expired_grants",
    # Payments
    "purchase_tokens",
    "confirm_purchase",
    "get_user_payments",
    # Waitlist
    "enqueue",
    "promote_waitlist",
    "leave_waitlist",
    "get_waitlist",
    # Bookings
    "BookingResult",
    "can_refund",
    "create_booking",
    "cancel_booking",
    "check_in",
    "mark_no_show",
    "get_user_bookings",
    "get_session_bookings",
    "get_booking_stats",
]
