import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from taskrelay.settings import settings
from taskrelay.api.v1.jobs import router as jobs_router
from taskrelay.api.v1.webhooks import router as webhooks_router
from taskrelay.api.v1.realtime import router as realtime_router
from taskrelay.api.v1.admin import router as admin_router
from taskrelay.api.v1.metrics import router as metrics_router

logger = logging.getLogger("uvicorn")

@asynccontextmanager
async def lifespan(app: FastAPI):
    from sqlalchemy.exc import OperationalError
    from taskrelay.db.session import init_models
    from taskrelay.scheduler.service import MaintenanceService
    from taskrelay.services.ingestion import require_ingestion_secret

    # 1. Refuse to start without the ingestion hash secret
    require_ingestion_secret()

    # 2. Create tables (retry while the database is still starting)
    if settings.DB_CREATE_TABLES:
        for i in range(10):
            try:
                await init_models()
                break
            except (OperationalError, OSError) as e:
                if i == 9:
                    raise
                logger.warning(f"Database not ready, retrying in 2s... ({i+1}/10): {e}")
                await asyncio.sleep(2)

    # 3. Start maintenance (purge / gauges / backlog)
    maintenance = MaintenanceService()
    await maintenance.start()

    # 4. Optional in-process worker
    worker = None
    worker_task = None
    if settings.JOB_WORKER_EMBEDDED:
        from taskrelay.jobs.runner import build_worker
        worker = build_worker()
        worker_task = asyncio.create_task(worker.run())

    yield

    # Shutdown
    if worker is not None:
        worker.stop()
        await worker_task
    await maintenance.stop()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(webhooks_router, prefix="/api/v1/webhooks", tags=["webhooks"])
app.include_router(realtime_router, prefix="/api/v1/realtime", tags=["realtime"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
