"""Standalone job worker process: `taskrelay-worker`."""

import asyncio
import logging
import signal
import sys
from typing import Optional

from taskrelay.db.session import AsyncSessionLocal, init_models
from taskrelay.domain.errors import ConfigurationError
from taskrelay.jobs.handlers import build_default_registry
from taskrelay.jobs.worker import JobWorker
from taskrelay.services.ingestion import require_ingestion_secret
from taskrelay.services.job_store import JobStore
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

def build_worker(worker_id: Optional[str] = None) -> JobWorker:
    return JobWorker(
        JobStore(AsyncSessionLocal),
        build_default_registry(),
        worker_id=worker_id,
        session_factory=AsyncSessionLocal,
    )

async def run_worker(worker: JobWorker):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows support
            pass

    if settings.DB_CREATE_TABLES:
        await init_models()
    await worker.run()

def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        require_ingestion_secret()
    except ConfigurationError as e:
        logger.critical("Refusing to start worker: %s", e)
        sys.exit(1)

    asyncio.run(run_worker(build_worker()))

if __name__ == "__main__":
    main()
