from pydantic import BaseModel, Field

from xenoflow.core.tasks import WorkflowDefinition, WorkflowInputs


# --- Request models ---

class WorkflowCreate(WorkflowDefinition):
    pass


class RunCreate(WorkflowInputs):
    pass


# --- Response models ---

class WorkflowResponse(BaseModel):
    id: str
    definition: dict
    created_at: str


class RunResponse(BaseModel):
    id: str
    workflow_id: str
    status: str
    started_at: str
    finished_at: str | None = None
    error: str | None = None


class ArtifactResponse(BaseModel):
    path: str
    size_bytes: int


class RunOutputsResponse(BaseModel):
    run_id: str
    status: str
    outputs: dict[str, list[ArtifactResponse]] = Field(default_factory=dict)


class TaskInstanceResponse(BaseModel):
    id: str
    run_id: str
    task_id: str
    command: str
    status: str
    attempts: int
    max_retries: int
    preemptible: bool
    cpu: int | None = None
    memory_gb: float | None = None
    disk_gb: int | None = None
    image: str | None = None
    outputs: dict[str, list[ArtifactResponse]] | None = None
    exit_code: int | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    error_kind: str | None = None
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    worker_id: str | None = None
