"""Student Routers Package"""
from .bookings import router as bookings_router
from .wallet import router as wallet_router

__all__ = [
    "bookings_router",
    "wallet_router",
]
