"""Package Plan Model - a purchasable token bundle with cancellation rules"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    ForeignKey,
    JSON,
    CheckConstraint,
    func,
)

from gymbook.core.database import Base, UTCDateTime, utc_now

DEFAULT_PLAN_RULES = {
    "cancel_before_hours": 24,
    "no_show_penalty": True,
    "transferable": False,
}


class PackagePlan(Base):
    __tablename__ = "package_plans"

    id = Column(Integer, primary_key=True, index=True)
    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    tokens = Column(Integer, nullable=False)
    validity_days = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="ARS", nullable=False)

    # {"cancel_before_hours": int | None, "no_show_penalty": bool, "transferable": bool}
    rules = Column(JSON, nullable=False, default=lambda: dict(DEFAULT_PLAN_RULES))
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("tokens > 0", name="ck_package_plan_tokens_positive"),
        CheckConstraint("validity_days > 0", name="ck_package_plan_validity_positive"),
    )

    def get_rule(self, name: str):
        """Значение правила плана или None"""
        if not isinstance(self.rules, dict):
            return None
        return self.rules.get(name)

    def __repr__(self):
        return f"<PackagePlan(id={self.id}, name='{self.name}', tokens={self.tokens})>"
