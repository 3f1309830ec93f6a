"""Schedule Template Model - weekly recurrence rule for generating sessions"""
from sqlalchemy import (
    Column,
    Integer,
    Boolean,
    Time,
    ForeignKey,
    JSON,
    CheckConstraint,
    func,
)

from gymbook.core.database import Base, UTCDateTime, utc_now


class ScheduleTemplate(Base):
    __tablename__ = "schedule_templates"

    id = Column(Integer, primary_key=True, index=True)

    gym_id = Column(Integer, ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False, index=True)
    professor_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id", ondelete="RESTRICT"), nullable=False)
    class_type_id = Column(Integer, ForeignKey("class_types.id", ondelete="RESTRICT"), nullable=False)

    # ISO дни недели: 1 = понедельник ... 7 = воскресенье
    days_of_week = Column(JSON, nullable=False, default=list)
    # Локальное время начала в часовом поясе зала
    start_time = Column(Time, nullable=False)
    duration_min = Column(Integer, nullable=False)
    capacity = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_schedule_template_capacity_positive"),
        CheckConstraint("duration_min > 0", name="ck_schedule_template_duration_positive"),
    )

    def __repr__(self):
        return f"<ScheduleTemplate(id={self.id}, days={self.days_of_week}, start={self.start_time})>"
