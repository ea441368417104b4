from pydantic import BaseModel, Field

from xenoflow.core.models import ResolvedArtifact, ResourceAllocation
from xenoflow.core.tasks import OutputDecl


class ExecutionRequest(BaseModel):
    run_id: str
    task_name: str
    attempt: int
    command: str
    inputs: dict[str, list[ResolvedArtifact]] = Field(default_factory=dict)
    outputs: list[OutputDecl] = Field(default_factory=list)
    resources: ResourceAllocation
    timeout_seconds: float | None = None


class ExecutionResult(BaseModel):
    exit_code: int | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    outputs: dict[str, list[ResolvedArtifact]] = Field(default_factory=dict)
    missing_outputs: list[str] = Field(default_factory=list)
    timed_out: bool = False
    preempted: bool = False
    stderr_tail: str = ""
    worker_id: str | None = None


class DiscardRequest(BaseModel):
    paths: list[str]
