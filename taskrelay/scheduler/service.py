import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker

from taskrelay.db.session import AsyncSessionLocal, engine as default_engine
from taskrelay.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from taskrelay.utils.locking import try_advisory_lock, release_advisory_lock
from taskrelay.api.v1.metrics import LEADER_STATUS
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

class MaintenanceService:
    """
    Periodic housekeeping inside the API process.

    Every instance refreshes its queue gauges; only the holder of the
    maintenance advisory lock purges expired events and reports backlog.
    """

    def __init__(
        self,
        interval: Optional[float] = None,
        engine: AsyncEngine = default_engine,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ):
        self.interval = interval or settings.MAINTENANCE_INTERVAL_SECONDS
        self.engine = engine
        self.session_factory = session_factory
        self._running = False
        self._task = None
        self._is_leader = False
        self._lock_conn: Optional[AsyncConnection] = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Maintenance service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._drop_lock_connection()
        logger.info("Maintenance service stopped.")

    async def _drop_lock_connection(self):
        if self._lock_conn is not None:
            try:
                if self._is_leader:
                    await release_advisory_lock(self._lock_conn)
                await self._lock_conn.close()
            except Exception as e:
                logger.warning(f"Closing maintenance lock connection failed: {e}")
            self._lock_conn = None
        self._set_leader(False)

    def _set_leader(self, is_leader: bool):
        if is_leader and not self._is_leader:
            logger.info("Acquired maintenance leadership.")
        elif not is_leader and self._is_leader:
            logger.info("Lost maintenance leadership.")
        self._is_leader = is_leader
        LEADER_STATUS.set(1 if is_leader else 0)

    async def tick(self):
        if self._lock_conn is None:
            self._lock_conn = await self.engine.connect()

        # The lock lives on this connection; commit ends the transaction only
        is_leader = await try_advisory_lock(self._lock_conn)
        await self._lock_conn.commit()
        self._set_leader(is_leader)

        async with self.session_factory() as session:
            if is_leader:
                await run_leader_tasks(session)
            await run_metrics_tasks(session)

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in maintenance ticker: {e}", exc_info=True)
                # Reconnect on the next tick; a dropped connection loses the lock anyway
                await self._drop_lock_connection()

            await asyncio.sleep(self.interval)
