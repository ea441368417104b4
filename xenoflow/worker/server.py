import logging
import os

from fastapi import FastAPI, HTTPException

from xenoflow import config
from xenoflow.core.errors import EstimationError
from xenoflow.worker.executor import LocalBackend
from xenoflow.worker.schemas import DiscardRequest, ExecutionRequest, ExecutionResult

logger = logging.getLogger(__name__)

app = FastAPI(title="Xenoflow Worker")

WORKER_ID = os.getenv("WORKER_ID", "worker-unknown")

backend = LocalBackend(
    config.WORK_DIR,
    use_docker=config.USE_DOCKER,
    check_disk=config.CHECK_DISK,
    worker_id=WORKER_ID,
)


@app.get("/health")
def health():
    return {"status": "ok", "worker_id": WORKER_ID}


@app.post("/execute", response_model=ExecutionResult)
def execute_task(request: ExecutionRequest):
    logger.info(
        "[%s] Received task %s attempt %d: %s",
        WORKER_ID,
        request.task_name,
        request.attempt,
        request.command,
    )
    try:
        return backend.execute_sync(request)
    except EstimationError as e:
        raise HTTPException(
            status_code=422, detail={"kind": e.kind.value, "message": e.message}
        )


@app.post("/discard")
def discard(request: DiscardRequest):
    backend.discard_sync(request.paths)
    return {"status": "ok", "discarded": len(request.paths)}
