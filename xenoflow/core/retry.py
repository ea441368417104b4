import logging
from collections.abc import Awaitable, Callable

from xenoflow.core.errors import TransientFailure, WorkflowError
from xenoflow.core.models import ResolvedArtifact, RunResult, TaskInstance, TaskState

logger = logging.getLogger(__name__)

Attempt = Callable[[TaskInstance], Awaitable[dict[str, list[ResolvedArtifact]]]]
Transition = Callable[[TaskInstance, TaskState], None]


class RetryController:
    """Runs task attempts until one succeeds or the failure is final.

    Only TransientFailure is retried, and only for preemptible tasks, at most
    ``max_retries`` times after the first attempt. Every other error kind
    ends the task on the attempt that raised it.
    """

    def __init__(
        self,
        resource_retry_multiplier: float = 1.5,
        transition: Transition | None = None,
    ):
        self.resource_retry_multiplier = resource_retry_multiplier
        self._transition = transition or _set_state

    def should_retry(self, instance: TaskInstance, error: WorkflowError) -> bool:
        if not isinstance(error, TransientFailure):
            return False
        if not instance.spec.preemptible:
            return False
        retries_used = instance.attempts - 1
        return retries_used < instance.spec.max_retries

    async def run(self, instance: TaskInstance, attempt: Attempt) -> RunResult:
        while True:
            instance.attempts += 1
            self._transition(instance, TaskState.RUNNING)
            try:
                outputs = await attempt(instance)
            except WorkflowError as e:
                instance.error_kind = e.kind
                instance.error = e.message
                self._transition(instance, TaskState.FAILED)

                if not self.should_retry(instance, e):
                    return RunResult(
                        task_name=instance.name,
                        succeeded=False,
                        attempts=instance.attempts,
                        error_kind=e.kind,
                        error=e.message,
                    )

                if e.resource_exhausted:
                    instance.resource_scale *= self.resource_retry_multiplier
                logger.warning(
                    "Task %s attempt %d failed transiently (%s); retrying (%d/%d)",
                    instance.name,
                    instance.attempts,
                    e.message,
                    instance.attempts,
                    instance.spec.max_retries,
                )
                self._transition(instance, TaskState.RETRYING)
                continue

            instance.error_kind = None
            instance.error = None
            return RunResult(
                task_name=instance.name,
                succeeded=True,
                attempts=instance.attempts,
                outputs=outputs,
            )


def _set_state(instance: TaskInstance, state: TaskState) -> None:
    instance.state = state
