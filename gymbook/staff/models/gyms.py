"""Gym catalog models: gyms, their locations, rooms and class types"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
    func,
)

from gymbook.core.database import Base, UTCDateTime, utc_now


class Gym(Base):
    __tablename__ = "gyms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    # IANA timezone, используется при генерации сессий из шаблонов
    timezone = Column(String(64), nullable=False, default="UTC")
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Gym(id={self.id}, name='{self.name}')>"


class Location(Base):
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, index=True)
    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)


class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    location_id = Column(Integer, ForeignKey("locations.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    # Вместимость помещения (справочно, лимит сессии задается отдельно)
    capacity = Column(Integer, nullable=True)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("location_id", "name", name="uq_room_location_name"),
    )


class ClassType(Base):
    __tablename__ = "class_types"

    id = Column(Integer, primary_key=True, index=True)
    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_class_types_gym_active", "gym_id", "is_active"),
    )
