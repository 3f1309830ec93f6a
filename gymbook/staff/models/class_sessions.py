"""Class Session Model - one scheduled occurrence of a class in a room"""
from enum import Enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Index,
    CheckConstraint,
    Enum as SQLEnum,
    func,
)

from gymbook.core.database import Base, UTCDateTime, utc_now


class SessionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Статусы, занимающие зал
ACTIVE_SESSION_STATUSES = (SessionStatus.SCHEDULED, SessionStatus.IN_PROGRESS)

# Допустимые переходы; COMPLETED и CANCELLED терминальные
SESSION_TRANSITIONS = {
    SessionStatus.SCHEDULED: {SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED},
    SessionStatus.IN_PROGRESS: {SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.CANCELLED: set(),
}


class ClassSession(Base):
    __tablename__ = "class_sessions"

    id = Column(Integer, primary_key=True, index=True)

    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False)
    professor_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id", ondelete="RESTRICT"), nullable=False)
    class_type_id = Column(Integer, ForeignKey("class_types.id", ondelete="RESTRICT"), nullable=False)
    template_id = Column(Integer, ForeignKey("schedule_templates.id", ondelete="SET NULL"), nullable=True)

    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    capacity = Column(Integer, nullable=False)
    status = Column(
        SQLEnum(SessionStatus, name="session_status"),
        default=SessionStatus.SCHEDULED,
        nullable=False,
    )

    # Монотонный счетчик позиций листа ожидания, позиции не переиспользуются
    waitlist_seq = Column(Integer, default=0, nullable=False)

    cancel_reason = Column(String(500), nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_class_session_capacity_positive"),
        CheckConstraint("end_at > start_at", name="ck_class_session_time_window"),
        Index("ix_class_sessions_room_window", "room_id", "start_at", "end_at"),
        Index("ix_class_sessions_gym_start", "gym_id", "start_at"),
        Index("ix_class_sessions_status", "status"),
    )

    @property
    def occupies_room(self) -> bool:
        return self.status in ACTIVE_SESSION_STATUSES

    @property
    def duration_minutes(self) -> int:
        return int((self.end_at - self.start_at).total_seconds() // 60)

    def can_transition_to(self, new_status: SessionStatus) -> bool:
        return new_status in SESSION_TRANSITIONS[SessionStatus(self.status)]

    def __repr__(self):
        return (
            f"<ClassSession(id={self.id}, room_id={self.room_id}, "
            f"start_at={self.start_at}, status={self.status})>"
        )
