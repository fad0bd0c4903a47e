"""Per-session write serialization and compare-and-swap helpers."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Type, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from leadcycle.exceptions import ConcurrentUpdateError

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5

T = TypeVar("T")


class StaleWriteError(Exception):
    """Raised when a versioned row changed between read and write."""


class SessionLocks:
    """Registry of per-key asyncio locks.

    A lock lives only while some task holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


session_locks = SessionLocks()


async def cas_update(
    session: AsyncSession,
    model: Type[SQLModel],
    row_id: int,
    version: int,
    values: Dict[str, Any],
) -> None:
    """Write ``values`` only if the row is still at ``version``; bumps the version."""
    conn = await session.connection()
    statement = (
        update(model)
        .where(model.id == row_id, model.version == version)
        .values(version=version + 1, **values)
    )
    result = await conn.execute(statement)
    if result.rowcount != 1:
        raise StaleWriteError(f"{model.__name__} {row_id} is no longer at version {version}")


async def run_serialized(
    key: str,
    func: Callable[[], Awaitable[T]],
    *,
    resource: str = "Session",
    attempts: int = MAX_WRITE_ATTEMPTS,
) -> T:
    """Run ``func`` under the lock for ``key``, retrying lost write races."""
    last_exc: Optional[Exception] = None
    async with session_locks.hold(key):
        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except (StaleWriteError, IntegrityError) as exc:
                last_exc = exc
                logger.info("write conflict on %s %s (attempt %s/%s): %s", resource, key, attempt, attempts, exc)
    raise ConcurrentUpdateError(resource, key, attempts) from last_exc
