import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from xenoflow.api.routes import router
from xenoflow.core.runs import get_run_manager
from xenoflow.db import repository
from xenoflow.db.database import SessionLocal, init_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    db = SessionLocal()
    try:
        orphaned = repository.fail_orphaned_runs(db)
    finally:
        db.close()
    if orphaned:
        logger.warning("Marked %d interrupted run(s) as FAILED", orphaned)
    yield
    await get_run_manager().shutdown()


app = FastAPI(title="Xenoflow", lifespan=lifespan)
app.include_router(router)
