from typing import Union

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

# Arbitrary 64-bit key shared by every instance competing for maintenance leadership
MAINTENANCE_LOCK_KEY = 73019245

Executor = Union[AsyncConnection, AsyncSession]

async def try_advisory_lock(conn: Executor, key: int = MAINTENANCE_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.

    The lock belongs to the database connection, not the transaction: the
    caller must keep the same connection checked out for as long as it wants
    to hold the lock. Closing the connection releases it.
    """
    result = await conn.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True

async def release_advisory_lock(conn: Executor, key: int = MAINTENANCE_LOCK_KEY) -> bool:
    result = await conn.execute(
        text("SELECT pg_advisory_unlock(:key)"),
        {"key": key}
    )
    return result.scalar() is True
