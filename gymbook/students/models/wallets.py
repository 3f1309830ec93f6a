"""Token Wallet & Grant Models - per-(user, gym) balance and its expiring batches"""
from enum import Enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Index,
    UniqueConstraint,
    CheckConstraint,
    Enum as SQLEnum,
    func,
)

from gymbook.core.database import Base, UTCDateTime, utc_now


class GrantSource(str, Enum):
    PURCHASE = "PURCHASE"
    ASSIGNMENT = "ASSIGNMENT"
    BONUS = "BONUS"


class TokenWallet(Base):
    """Агрегированный баланс - источник истины для проверок"""

    __tablename__ = "token_wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False)
    balance = Column(Integer, default=0, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "gym_id", name="uq_token_wallet_user_gym"),
        CheckConstraint("balance >= 0", name="ck_token_wallet_balance_non_negative"),
    )

    def __repr__(self):
        return f"<TokenWallet(id={self.id}, user_id={self.user_id}, gym_id={self.gym_id}, balance={self.balance})>"


class TokenGrant(Base):
    """Партия токенов; tokens - исторический размер партии, не остаток"""

    __tablename__ = "token_grants"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("token_wallets.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False)
    plan_id = Column(Integer, ForeignKey("package_plans.id", ondelete="SET NULL"), nullable=True)

    tokens = Column(Integer, nullable=False)
    # Сколько токенов партии уже списано (брони, переводы) за вычетом возвратов
    consumed_tokens = Column(Integer, default=0, server_default="0", nullable=False)
    source = Column(SQLEnum(GrantSource, name="grant_source"), nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)

    # Отметка обработки sweep; повторный sweep пропускает партию
    swept_at = Column(UTCDateTime, nullable=True)
    expired_tokens = Column(Integer, nullable=True)

    reason = Column(String(500), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("tokens > 0", name="ck_token_grant_tokens_positive"),
        CheckConstraint(
            "consumed_tokens >= 0 AND consumed_tokens <= tokens",
            name="ck_token_grant_consumed_range",
        ),
        Index("ix_token_grants_wallet_created", "wallet_id", "created_at"),
        Index("ix_token_grants_expiry", "expires_at", "swept_at"),
    )

    def is_usable(self, now) -> bool:
        """Партия не истекла и не списана sweep-ом"""
        if self.swept_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now

    @property
    def remaining(self) -> int:
        return self.tokens - (self.consumed_tokens or 0)

    def __repr__(self):
        return f"<TokenGrant(id={self.id}, wallet_id={self.wallet_id}, tokens={self.tokens}, source={self.source})>"
