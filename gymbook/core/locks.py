"""
Внутрипроцессные блокировки по ключу.

Сериализуют check-and-act для одной сессии или зала внутри
воркера. Между процессами порядок обеспечивают блокировки строк
(SELECT ... FOR UPDATE) и условные атомарные UPDATE.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Захватить блокировки для всех ключей в детерминированном порядке"""
        registered = []
        acquired = []
        try:
            for key in sorted(set(keys)):
                self._waiters[key] += 1
                registered.append(key)
                await self._locks[key].acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in registered:
                self._waiters[key] -= 1
                if self._waiters[key] <= 0:
                    self._waiters.pop(key, None)
                    lock = self._locks.get(key)
                    if lock is not None and not lock.locked():
                        self._locks.pop(key, None)


def session_key(session_id: int) -> str:
    return f"class_session:{session_id}"


def room_key(room_id: int) -> str:
    return f"room:{room_id}"


booking_locks = KeyedLocks()
