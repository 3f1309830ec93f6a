"""
Audit trail: best-effort append-only журнал мутаций.

Записи накапливаются в рамках бизнес-транзакции (TransactionManager)
и пишутся отдельной сессией после успешного commit. Ошибка записи
журнала логируется и учитывается в error_tracker, но не откатывает
уже зафиксированную операцию. При rollback накопленные записи
отбрасываются вместе с after-commit callbacks.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gymbook.core.database import AFTER_COMMIT_KEY, async_session, after_commit
from gymbook.core.logging_utils import error_tracker, log_business_event

logger = logging.getLogger(__name__)


class _StagedAudit:
    """Буфер записей одной транзакции"""

    def __init__(self, trail: "AuditTrail"):
        self.trail = trail
        self.entries: List[Dict[str, Any]] = []

    async def __call__(self):
        await self.trail.write(self.entries)


class AuditTrail:
    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> Callable[[], AsyncSession]:
        return self._session_factory or async_session

    def stage(
        self,
        db: AsyncSession,
        *,
        actor_id: Optional[int],
        entity: str,
        entity_id: Optional[int],
        action: str,
        diff: Optional[Dict[str, Any]] = None,
        gym_id: Optional[int] = None,
    ) -> None:
        """Поставить запись в очередь текущей транзакции"""
        callbacks = db.info.get(AFTER_COMMIT_KEY) or []
        staged = next(
            (cb for cb in callbacks if isinstance(cb, _StagedAudit) and cb.trail is self),
            None,
        )
        if staged is None:
            staged = _StagedAudit(self)
            after_commit(db, staged)

        staged.entries.append(
            {
                "actor_id": actor_id,
                "gym_id": gym_id,
                "entity": entity,
                "entity_id": entity_id,
                "action": action,
                "diff": diff or {},
            }
        )

    async def write(self, entries: List[Dict[str, Any]]) -> bool:
        """Записать журнал отдельной транзакцией. True если записано."""
        if not entries:
            return True

        from gymbook.staff.models.audit_logs import AuditLog

        try:
            async with self.session_factory() as audit_db:
                audit_db.add_all([AuditLog(**entry) for entry in entries])
                await audit_db.commit()
        except Exception as e:
            logger.error(
                f"Audit write failed for {len(entries)} entries: {str(e)}",
                extra={
                    "exception_type": type(e).__name__,
                    "entries": [
                        f"{entry['entity']}:{entry['entity_id']}:{entry['action']}"
                        for entry in entries
                    ],
                },
            )
            error_tracker.track_error(
                "AUDIT_WRITE_FAILED",
                str(e),
                {"entries_count": len(entries)},
            )
            return False

        for entry in entries:
            log_business_event(
                f"{entry['entity']}.{entry['action']}".lower(),
                entry["entity"],
                entry["entity_id"],
                entry["diff"],
                actor_id=entry["actor_id"],
            )
        return True


audit_trail = AuditTrail()
