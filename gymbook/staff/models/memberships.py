"""Gym Membership Model - a user's role-scoped association with a gym"""
from sqlalchemy import (
    Column,
    Integer,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
    Enum as SQLEnum,
    func,
)

from gymbook.core.database import Base, UTCDateTime, utc_now
from gymbook.core.permissions import UserRole


class GymMembership(Base):
    __tablename__ = "gym_memberships"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False)
    role_in_gym = Column(SQLEnum(UserRole, name="user_role"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "gym_id", name="uq_gym_membership_user_gym"),
        Index("ix_gym_membership_gym_role", "gym_id", "role_in_gym"),
    )

    def __repr__(self):
        return f"<GymMembership(user_id={self.user_id}, gym_id={self.gym_id}, role={self.role_in_gym})>"
