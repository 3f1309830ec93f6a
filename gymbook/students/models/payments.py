"""Payment Model - pending purchases of package plans"""
from enum import Enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    ForeignKey,
    Index,
    Enum as SQLEnum,
    func,
)

from gymbook.core.database import Base, UTCDateTime, utc_now


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False)
    plan_id = Column(Integer, ForeignKey("package_plans.id", ondelete="RESTRICT"), nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(SQLEnum(PaymentStatus, name="payment_status"), default=PaymentStatus.PENDING, nullable=False)

    # ID транзакции у платежного провайдера
    external_id = Column(String(255), nullable=True, unique=True)
    grant_id = Column(Integer, ForeignKey("token_grants.id", ondelete="SET NULL"), nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_payments_status", "status"),
    )

    def __repr__(self):
        return f"<Payment(id={self.id}, user_id={self.user_id}, amount={self.amount}, status={self.status})>"
