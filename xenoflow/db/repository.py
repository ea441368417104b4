import json
import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from xenoflow.core.models import RunState, TaskState
from xenoflow.db.tables import TaskInstance, Workflow, WorkflowRun

_TERMINAL_STATES = (TaskState.SUCCEEDED, TaskState.FAILED_FINAL)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_workflow(db: Session, workflow_id: str, definition: dict) -> Workflow:
    workflow = Workflow(
        id=workflow_id,
        definition=json.dumps(definition),
        created_at=_now(),
    )
    db.add(workflow)
    db.commit()
    db.refresh(workflow)
    return workflow


def get_workflow(db: Session, workflow_id: str) -> Workflow | None:
    return db.query(Workflow).filter(Workflow.id == workflow_id).first()


def list_workflows(db: Session) -> list[Workflow]:
    return db.query(Workflow).all()


def create_run(
    db: Session, workflow_id: str, tasks: list[dict], inputs: dict
) -> WorkflowRun:
    run_id = str(uuid.uuid4())

    run = WorkflowRun(
        id=run_id,
        workflow_id=workflow_id,
        status=RunState.RUNNING,
        inputs=json.dumps(inputs),
        started_at=_now(),
    )
    db.add(run)

    for task in tasks:
        instance = TaskInstance(
            id=str(uuid.uuid4()),
            run_id=run_id,
            task_id=task["name"],
            command=task["command"],
            status=TaskState.PENDING,
            max_retries=task.get("max_retries", 0),
            preemptible=int(task.get("preemptible", False)),
        )
        db.add(instance)

    db.commit()
    db.refresh(run)
    return run


def get_run(db: Session, run_id: str) -> WorkflowRun | None:
    return db.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()


def get_active_runs(db: Session) -> list[WorkflowRun]:
    return (
        db.query(WorkflowRun)
        .filter(WorkflowRun.status == RunState.RUNNING)
        .all()
    )


def update_run_status(
    db: Session,
    run_id: str,
    status: str,
    outputs: dict | None = None,
    error: str | None = None,
):
    run = db.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()
    if run:
        run.status = status
        if status in (RunState.SUCCESS, RunState.FAILED):
            run.finished_at = _now()
        if outputs is not None:
            run.outputs = json.dumps(outputs)
        if error is not None:
            run.error = error
        db.commit()


def fail_orphaned_runs(db: Session) -> int:
    """Mark runs left RUNNING by a previous process as FAILED."""
    runs = get_active_runs(db)
    for run in runs:
        update_run_status(
            db, run.id, RunState.FAILED, error="Run interrupted by a server restart"
        )
    return len(runs)


def get_task_instances(db: Session, run_id: str) -> list[TaskInstance]:
    return db.query(TaskInstance).filter(TaskInstance.run_id == run_id).all()


def get_task_instance(db: Session, run_id: str, task_id: str) -> TaskInstance | None:
    return (
        db.query(TaskInstance)
        .filter(TaskInstance.run_id == run_id, TaskInstance.task_id == task_id)
        .first()
    )


def update_task_instance(
    db: Session,
    run_id: str,
    task_id: str,
    status: str,
    attempts: int | None = None,
    command: str | None = None,
    allocation: dict | None = None,
    outputs: dict | None = None,
    exit_code: int | None = None,
    stdout_path: str | None = None,
    stderr_path: str | None = None,
    error_kind: str | None = None,
    error: str | None = None,
    worker_id: str | None = None,
):
    task = get_task_instance(db, run_id, task_id)
    if task:
        if status == TaskState.RUNNING and task.started_at is None:
            task.started_at = _now()
        if status in _TERMINAL_STATES:
            task.finished_at = _now()
        task.status = status
        if attempts is not None:
            task.attempts = attempts
        if command is not None:
            task.command = command
        if allocation is not None:
            task.cpu = allocation["cpu"]
            task.memory_gb = allocation["memory_gb"]
            task.disk_gb = allocation["disk_gb"]
            task.image = allocation["image"]
        if outputs is not None:
            task.outputs = json.dumps(outputs)
        if exit_code is not None:
            task.exit_code = exit_code
        if stdout_path is not None:
            task.stdout_path = stdout_path
        if stderr_path is not None:
            task.stderr_path = stderr_path
        task.error_kind = error_kind
        task.error = error
        if worker_id is not None:
            task.worker_id = worker_id
        db.commit()
