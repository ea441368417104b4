import asyncio
import dataclasses
import logging

from sqlalchemy.orm import sessionmaker

from xenoflow import config
from xenoflow.core.dag import WorkflowGraph
from xenoflow.core.errors import WorkflowError
from xenoflow.core.models import RunState, TaskInstance
from xenoflow.core.resources import ResourceEstimator
from xenoflow.core.scheduler import ExecutionBackend, WorkflowExecutor
from xenoflow.core.tasks import WorkflowInputs
from xenoflow.db import repository
from xenoflow.db.database import SessionLocal
from xenoflow.pipelines.xenograft import PipelineImages, image_minimums
from xenoflow.worker.client import HttpBackend
from xenoflow.worker.executor import LocalBackend

logger = logging.getLogger(__name__)


def artifacts_to_json(outputs: dict) -> dict:
    return {
        name: [dataclasses.asdict(a) for a in artifacts]
        for name, artifacts in outputs.items()
    }


class DatabaseRecorder:
    """Archives every task transition of one run into ``task_instances``."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def task_changed(self, run_id: str, instance: TaskInstance) -> None:
        allocation = None
        if instance.allocation is not None:
            allocation = dataclasses.asdict(instance.allocation)
        db = self.session_factory()
        try:
            repository.update_task_instance(
                db,
                run_id,
                instance.name,
                instance.state,
                attempts=instance.attempts,
                command=instance.command,
                allocation=allocation,
                outputs=artifacts_to_json(instance.outputs) if instance.outputs else None,
                exit_code=instance.exit_code,
                stdout_path=instance.stdout_path,
                stderr_path=instance.stderr_path,
                error_kind=instance.error_kind.value if instance.error_kind else None,
                error=instance.error,
                worker_id=instance.worker_id,
            )
        finally:
            db.close()


class RunManager:
    """Runs workflows in the background of the API process."""

    def __init__(
        self,
        backend: ExecutionBackend,
        session_factory: sessionmaker,
        max_concurrency: int = config.MAX_CONCURRENCY,
        estimator: ResourceEstimator | None = None,
    ):
        self.backend = backend
        self.estimator = estimator or build_estimator()
        self.session_factory = session_factory
        self.max_concurrency = max_concurrency
        self._tasks: dict[str, asyncio.Task] = {}

    def submit(self, run_id: str, graph: WorkflowGraph, inputs: WorkflowInputs) -> None:
        task = asyncio.create_task(self._run(run_id, graph, inputs))
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))

    async def shutdown(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def _run(self, run_id: str, graph: WorkflowGraph, inputs: WorkflowInputs):
        executor = WorkflowExecutor(
            self.backend,
            estimator=self.estimator,
            max_concurrency=self.max_concurrency,
            listener=DatabaseRecorder(self.session_factory),
        )
        try:
            result = await executor.run(graph, inputs, run_id=run_id)
        except WorkflowError as e:
            logger.error("Run %s aborted: %s", run_id, e.message)
            self._finish(run_id, RunState.FAILED, error=e.message)
            return
        except Exception as e:
            logger.exception("Run %s crashed", run_id)
            self._finish(run_id, RunState.FAILED, error=f"Internal error: {e}")
            return

        error = None
        if not result.succeeded:
            failed = sorted(name for name, r in result.results.items() if not r.succeeded)
            error = f"Failed tasks: {failed}"
        self._finish(run_id, result.status, outputs=artifacts_to_json(result.outputs), error=error)

    def _finish(self, run_id: str, status: RunState, outputs=None, error=None):
        db = self.session_factory()
        try:
            repository.update_run_status(db, run_id, status, outputs=outputs, error=error)
        finally:
            db.close()


def build_backend() -> ExecutionBackend:
    if config.WORKER_PORTS:
        return HttpBackend(
            [f"http://{config.WORKER_HOST}:{port}" for port in config.WORKER_PORTS]
        )
    return LocalBackend(
        config.WORK_DIR,
        use_docker=config.USE_DOCKER,
        check_disk=config.CHECK_DISK,
    )


def build_estimator() -> ResourceEstimator:
    return ResourceEstimator(image_minimums(PipelineImages.from_config()))


_run_manager: RunManager | None = None


def get_run_manager() -> RunManager:
    global _run_manager
    if _run_manager is None:
        _run_manager = RunManager(build_backend(), SessionLocal)
    return _run_manager
