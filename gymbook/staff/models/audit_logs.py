"""Audit Log Model - append-only record of mutating actions"""
from sqlalchemy import Column, Integer, String, JSON, Index, func

from gymbook.core.database import Base, UTCDateTime, utc_now


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    # Без внешних ключей: журнал не должен зависеть от удаления сущностей
    actor_id = Column(Integer, nullable=True, index=True)
    gym_id = Column(Integer, nullable=True)
    entity = Column(String(64), nullable=False)
    entity_id = Column(Integer, nullable=True)
    action = Column(String(64), nullable=False)
    diff = Column(JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime, default=utc_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity", "entity_id"),
    )

    def __repr__(self):
        return f"<AuditLog(entity={self.entity}, entity_id={self.entity_id}, action={self.action})>"
