from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from xenoflow.core.tasks import TaskSpec


class TaskState(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    FAILED_FINAL = "FAILED_FINAL"


class RunState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ErrorKind(str, Enum):
    CYCLE_DETECTED = "CycleDetected"
    UNRESOLVED_INPUT = "UnresolvedInput"
    ESTIMATION_ERROR = "EstimationError"
    TRANSIENT_FAILURE = "TransientFailure"
    TOOL_FAILURE = "ToolFailure"
    DEPENDENCY_UNREACHABLE = "DependencyUnreachable"


@dataclass(frozen=True)
class ResolvedArtifact:
    path: str
    size_bytes: int


@dataclass(frozen=True)
class ResourceAllocation:
    cpu: int
    memory_gb: float
    disk_gb: int
    image: str


@dataclass
class RunResult:
    """Terminal record of one task within a workflow run."""

    task_name: str
    succeeded: bool
    attempts: int
    outputs: dict[str, list[ResolvedArtifact]] = field(default_factory=dict)
    error_kind: ErrorKind | None = None
    error: str | None = None


@dataclass
class TaskInstance:
    """Runtime state of a TaskSpec inside one workflow execution."""

    spec: "TaskSpec"
    rank: int
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    resource_scale: float = 1.0
    allocation: ResourceAllocation | None = None
    outputs: dict[str, list[ResolvedArtifact]] = field(default_factory=dict)
    exit_code: int | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    cancelled: bool = False
    command: str | None = None
    worker_id: str | None = None

    @property
    def name(self) -> str:
        return self.spec.name
