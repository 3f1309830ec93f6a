"""Booking & Waitlist Models - seat reservations and the queue for full sessions"""
from enum import Enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Index,
    UniqueConstraint,
    Enum as SQLEnum,
    func,
    text,
)

from gymbook.core.database import Base, UTCDateTime, utc_now


class BookingStatus(str, Enum):
    RESERVED = "RESERVED"
    CANCELLED = "CANCELLED"
    ATTENDED = "ATTENDED"
    NO_SHOW = "NO_SHOW"


# Брони, занимающие место в сессии
SEAT_HOLDING_STATUSES = (BookingStatus.RESERVED, BookingStatus.ATTENDED)


class CheckInMethod(str, Enum):
    MANUAL = "manual"
    QR = "qr"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("class_sessions.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Кошелек, с которого списан токен, и партия для проверки правил возврата
    wallet_id = Column(Integer, ForeignKey("token_wallets.id", ondelete="SET NULL"), nullable=True)
    grant_id = Column(Integer, ForeignKey("token_grants.id", ondelete="SET NULL"), nullable=True, index=True)

    status = Column(
        SQLEnum(BookingStatus, name="booking_status"),
        default=BookingStatus.RESERVED,
        nullable=False,
    )

    checked_in_at = Column(UTCDateTime, nullable=True)
    check_in_method = Column(String(20), nullable=True)
    checked_in_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    cancelled_at = Column(UTCDateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)
    # Токен возвращается не более одного раза на бронь
    refunded_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        # Не более одной неотмененной брони на (сессия, студент)
        Index(
            "uq_bookings_session_student_active",
            "session_id",
            "student_id",
            unique=True,
            postgresql_where=text("status <> 'CANCELLED'"),
            sqlite_where=text("status <> 'CANCELLED'"),
        ),
        Index("ix_bookings_session_status", "session_id", "status"),
    )

    @property
    def holds_seat(self) -> bool:
        return self.status in SEAT_HOLDING_STATUSES

    def __repr__(self):
        return f"<Booking(id={self.id}, session_id={self.session_id}, student_id={self.student_id}, status={self.status})>"


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("class_sessions.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "student_id", name="uq_waitlist_session_student"),
        UniqueConstraint("session_id", "position", name="uq_waitlist_session_position"),
    )

    def __repr__(self):
        return f"<WaitlistEntry(session_id={self.session_id}, student_id={self.student_id}, position={self.position})>"
