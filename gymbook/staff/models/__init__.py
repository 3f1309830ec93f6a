from gymbook.core.database import Base
from .users import User
from .gyms import Gym, Location, Room, ClassType
from .memberships import GymMembership
from .plans import PackagePlan, DEFAULT_PLAN_RULES
from .schedule_templates import ScheduleTemplate
from .class_sessions import (
    ClassSession,
    SessionStatus,
    ACTIVE_SESSION_STATUSES,
    SESSION_TRANSITIONS,
)
from .audit_logs import AuditLog

__all__ = [
    "Base",
    "User",
    "Gym",
    "Location",
    "Room",
    "ClassType",
    "GymMembership",
    "PackagePlan",
    "DEFAULT_PLAN_RULES",
    "ScheduleTemplate",
    "ClassSession",
    "SessionStatus",
    "ACTIVE_SESSION_STATUSES",
    "SESSION_TRANSITIONS",
    "AuditLog",
]
