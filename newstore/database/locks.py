import logging
import zlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DRAW_COMPLETION_LOCK = "draw_completion"

MYSQL_LOCK_TIMEOUT_SECONDS = 10


class AdvisoryLockTimeout(Exception):
    def __init__(self, message="Timed out waiting for advisory lock"):
        self.message = message
        super().__init__(self.message)


def concern_key(concern: str) -> int:
    """Stable signed 32 bit key for a lock concern name."""
    value = zlib.crc32(concern.encode("utf-8"))
    return value - (1 << 32) if value >= (1 << 31) else value


@asynccontextmanager
async def advisory_lock(
    session: AsyncSession, concern: str, resource_id: int
) -> AsyncGenerator[None, None]:
    """Named lock for one (concern, resource) pair inside the current transaction.

    PostgreSQL: transaction scoped pg_advisory_xact_lock, released at commit/rollback.
    MySQL: GET_LOCK/RELEASE_LOCK around the block.
    SQLite: no-op, the database write lock already serializes writers.
    """
    dialect = session.bind.dialect.name if session.bind is not None else ""

    if dialect == "postgresql":
        await session.execute(
            text("SELECT pg_advisory_xact_lock(:concern, :resource)"),
            {"concern": concern_key(concern), "resource": resource_id},
        )
        yield
        return

    if dialect in ("mysql", "mariadb"):
        name = f"{concern}:{resource_id}"
        result = await session.execute(
            text("SELECT GET_LOCK(:name, :timeout)"),
            {"name": name, "timeout": MYSQL_LOCK_TIMEOUT_SECONDS},
        )
        if result.scalar() != 1:
            raise AdvisoryLockTimeout(f"Timed out waiting for lock {name}")
        try:
            yield
        finally:
            await session.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": name})
        return

    logger.debug(f"No advisory lock support for dialect '{dialect}', skipping")
    yield
