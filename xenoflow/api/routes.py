import json

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from xenoflow.api.auth import verify_api_key
from xenoflow.api.schemas import (
    RunCreate,
    RunOutputsResponse,
    RunResponse,
    TaskInstanceResponse,
    WorkflowCreate,
    WorkflowResponse,
)
from xenoflow.core.dag import build_graph
from xenoflow.core.errors import WorkflowError
from xenoflow.core.runs import RunManager, get_run_manager
from xenoflow.core.tasks import WorkflowDefinition
from xenoflow.db import repository
from xenoflow.db.database import get_db

router = APIRouter(dependencies=[Depends(verify_api_key)])


def _workflow_response(wf) -> WorkflowResponse:
    return WorkflowResponse(
        id=wf.id,
        definition=json.loads(wf.definition),
        created_at=wf.created_at,
    )


def _run_response(run) -> RunResponse:
    return RunResponse(
        id=run.id,
        workflow_id=run.workflow_id,
        status=run.status,
        started_at=run.started_at,
        finished_at=run.finished_at,
        error=run.error,
    )


def _get_run_or_404(db: Session, run_id: str):
    run = repository.get_run(db, run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run


@router.post("/workflows", response_model=WorkflowResponse)
def register_workflow(workflow: WorkflowCreate, db: Session = Depends(get_db)):
    existing = repository.get_workflow(db, workflow.id)
    if existing:
        raise HTTPException(
            status_code=409, detail=f"Workflow '{workflow.id}' already exists"
        )

    try:
        build_graph(workflow)
    except WorkflowError as e:
        raise HTTPException(
            status_code=400, detail={"errors": [e.message], "kind": e.kind.value}
        )

    wf = repository.create_workflow(db, workflow.id, workflow.model_dump(mode="json"))
    return _workflow_response(wf)


@router.get("/workflows", response_model=list[WorkflowResponse])
def list_workflows(db: Session = Depends(get_db)):
    return [_workflow_response(w) for w in repository.list_workflows(db)]


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
def get_workflow(workflow_id: str, db: Session = Depends(get_db)):
    wf = repository.get_workflow(db, workflow_id)
    if not wf:
        raise HTTPException(
            status_code=404, detail=f"Workflow '{workflow_id}' not found"
        )
    return _workflow_response(wf)


@router.post("/workflows/{workflow_id}/run", response_model=RunResponse)
async def trigger_run(
    workflow_id: str,
    inputs: RunCreate | None = None,
    db: Session = Depends(get_db),
    manager: RunManager = Depends(get_run_manager),
):
    wf = repository.get_workflow(db, workflow_id)
    if not wf:
        raise HTTPException(
            status_code=404, detail=f"Workflow '{workflow_id}' not found"
        )

    inputs = inputs or RunCreate()
    definition = WorkflowDefinition.model_validate_json(wf.definition)
    graph = build_graph(definition)
    missing = [name for name in graph.external_inputs if name not in inputs.files]
    if missing:
        raise HTTPException(
            status_code=400, detail=f"Workflow inputs not provided: {missing}"
        )

    run = repository.create_run(
        db,
        workflow_id,
        [spec.model_dump() for spec in definition.tasks],
        inputs.model_dump(),
    )
    manager.submit(run.id, graph, inputs)
    return _run_response(run)


@router.get("/runs/{run_id}", response_model=RunResponse)
def get_run(run_id: str, db: Session = Depends(get_db)):
    return _run_response(_get_run_or_404(db, run_id))


@router.get("/runs/{run_id}/tasks", response_model=list[TaskInstanceResponse])
def get_task_instances(run_id: str, db: Session = Depends(get_db)):
    _get_run_or_404(db, run_id)

    tasks = repository.get_task_instances(db, run_id)
    return [
        TaskInstanceResponse(
            id=t.id,
            run_id=t.run_id,
            task_id=t.task_id,
            command=t.command,
            status=t.status,
            attempts=t.attempts,
            max_retries=t.max_retries,
            preemptible=bool(t.preemptible),
            cpu=t.cpu,
            memory_gb=t.memory_gb,
            disk_gb=t.disk_gb,
            image=t.image,
            outputs=json.loads(t.outputs) if t.outputs else None,
            exit_code=t.exit_code,
            stdout_path=t.stdout_path,
            stderr_path=t.stderr_path,
            error_kind=t.error_kind,
            error=t.error,
            started_at=t.started_at,
            finished_at=t.finished_at,
            worker_id=t.worker_id,
        )
        for t in tasks
    ]


@router.get("/runs/{run_id}/outputs", response_model=RunOutputsResponse)
def get_run_outputs(run_id: str, db: Session = Depends(get_db)):
    run = _get_run_or_404(db, run_id)
    return RunOutputsResponse(
        run_id=run.id,
        status=run.status,
        outputs=json.loads(run.outputs) if run.outputs else {},
    )
