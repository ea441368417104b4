from xenoflow.core.models import ErrorKind


class WorkflowError(Exception):
    """Base class for every failure the engine knows how to route."""

    kind: ErrorKind

    def __init__(self, message: str, task_name: str | None = None):
        super().__init__(message)
        self.message = message
        self.task_name = task_name


class CycleDetected(WorkflowError):
    kind = ErrorKind.CYCLE_DETECTED

    def __init__(self, remaining: list[str]):
        super().__init__(f"Workflow contains a cycle involving tasks: {remaining}")
        self.remaining = remaining


class UnresolvedInput(WorkflowError):
    kind = ErrorKind.UNRESOLVED_INPUT


class EstimationError(WorkflowError):
    kind = ErrorKind.ESTIMATION_ERROR


class TransientFailure(WorkflowError):
    """Preemption, lost worker or timeout. Retryable for preemptible tasks."""

    kind = ErrorKind.TRANSIENT_FAILURE

    def __init__(
        self,
        message: str,
        task_name: str | None = None,
        resource_exhausted: bool = False,
    ):
        super().__init__(message, task_name)
        self.resource_exhausted = resource_exhausted


class ToolFailure(WorkflowError):
    kind = ErrorKind.TOOL_FAILURE

    def __init__(
        self, message: str, task_name: str | None = None, exit_code: int | None = None
    ):
        super().__init__(message, task_name)
        self.exit_code = exit_code


class DependencyUnreachable(WorkflowError):
    kind = ErrorKind.DEPENDENCY_UNREACHABLE
