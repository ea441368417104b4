"""Deterministic classification of backend results into engine error kinds."""

from dataclasses import dataclass

from xenoflow.core.errors import ToolFailure, TransientFailure, WorkflowError

_PREEMPTION_PATTERNS: tuple[str, ...] = (
    "preempted",
    "instance was terminated",
    "worker lost",
)
_RESOURCE_EXHAUSTED_PATTERNS: tuple[str, ...] = (
    "no space left on device",
    "out of memory",
    "cannot allocate memory",
    "oom-kill",
    "java.lang.outofmemoryerror",
    "disk quota exceeded",
)


@dataclass(frozen=True)
class FailureClassification:
    retryable: bool
    resource_exhausted: bool
    reason: str
    matched_pattern: str | None = None

    def to_error(self, task_name: str, exit_code: int | None) -> WorkflowError:
        if self.retryable:
            return TransientFailure(
                self.reason, task_name, resource_exhausted=self.resource_exhausted
            )
        return ToolFailure(self.reason, task_name, exit_code=exit_code)


def classify_failure(
    *,
    exit_code: int | None,
    stderr_tail: str,
    preempted: bool,
    timed_out: bool,
    missing_outputs: list[str],
    preempted_exit_codes: tuple[int, ...],
) -> FailureClassification | None:
    """Return None for a successful attempt, otherwise how to route the failure."""

    haystack = stderr_tail.lower()

    if timed_out:
        return FailureClassification(True, False, "wall-clock timeout exceeded")

    if preempted:
        return FailureClassification(True, False, "execution environment preempted")

    if exit_code is not None and exit_code != 0:
        pattern = _first_match(haystack, _RESOURCE_EXHAUSTED_PATTERNS)
        if pattern is not None:
            return FailureClassification(
                True, True, f"resource exhausted (exit {exit_code})", pattern
            )

        if exit_code in preempted_exit_codes:
            return FailureClassification(
                True, False, f"preemption exit code {exit_code}"
            )

        pattern = _first_match(haystack, _PREEMPTION_PATTERNS)
        if pattern is not None:
            return FailureClassification(
                True, False, f"preemption reported (exit {exit_code})", pattern
            )

        return FailureClassification(False, False, f"tool exited with code {exit_code}")

    if missing_outputs:
        return FailureClassification(
            False, False, f"declared outputs not produced: {missing_outputs}"
        )

    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
