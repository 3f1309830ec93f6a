"""User Model - global account with a single platform role"""
from sqlalchemy import Column, Integer, String, Boolean, Enum as SQLEnum, func

from gymbook.core.database import Base, UTCDateTime, utc_now
from gymbook.core.permissions import UserRole


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone = Column(String(32), nullable=True)

    # Глобальная роль: ADMIN / PROFESSOR / STUDENT
    role = Column(SQLEnum(UserRole, name="user_role"), nullable=False, default=UserRole.STUDENT)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role={self.role})>"
