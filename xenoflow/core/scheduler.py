import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

from xenoflow import config
from xenoflow.core.artifacts import ArtifactStore
from xenoflow.core.dag import WorkflowGraph
from xenoflow.core.errors import (
    ToolFailure,
    TransientFailure,
    UnresolvedInput,
    WorkflowError,
)
from xenoflow.core.failures import classify_failure
from xenoflow.core.models import (
    ErrorKind,
    ResolvedArtifact,
    RunResult,
    RunState,
    TaskInstance,
    TaskState,
)
from xenoflow.core.resources import ResourceEstimator
from xenoflow.core.retry import RetryController
from xenoflow.core.tasks import WorkflowInputs
from xenoflow.worker.schemas import ExecutionRequest, ExecutionResult

logger = logging.getLogger(__name__)


class ExecutionBackend(Protocol):
    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...

    async def discard(self, artifacts: list[ResolvedArtifact]) -> None: ...


class TaskListener(Protocol):
    def task_changed(self, run_id: str, instance: TaskInstance) -> None: ...


@dataclass
class WorkflowResult:
    run_id: str
    status: RunState
    results: dict[str, RunResult]
    instances: dict[str, TaskInstance]
    outputs: dict[str, list[ResolvedArtifact]] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == RunState.SUCCESS


class WorkflowExecutor:
    """Drives every task of a WorkflowGraph through its lifecycle.

    A task becomes READY only once the artifact store holds all of its
    inputs. READY tasks are dispatched by topological rank, then declaration
    order, while fewer than ``max_concurrency`` are running. A task that fails
    finally takes its transitive dependents down with it; they are never
    dispatched. Unrelated branches keep running.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        estimator: ResourceEstimator | None = None,
        max_concurrency: int = config.MAX_CONCURRENCY,
        resource_retry_multiplier: float = config.RESOURCE_RETRY_MULTIPLIER,
        preempted_exit_codes: tuple[int, ...] = config.PREEMPTED_EXIT_CODES,
        default_timeout: float | None = config.TASK_TIMEOUT,
        collect_intermediates: bool = config.COLLECT_INTERMEDIATES,
        listener: TaskListener | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.backend = backend
        self.estimator = estimator or ResourceEstimator()
        self.max_concurrency = max_concurrency
        self.resource_retry_multiplier = resource_retry_multiplier
        self.preempted_exit_codes = preempted_exit_codes
        self.default_timeout = default_timeout
        self.collect_intermediates = collect_intermediates
        self.listener = listener

    async def run(
        self,
        graph: WorkflowGraph,
        inputs: WorkflowInputs,
        run_id: str | None = None,
    ) -> WorkflowResult:
        run_id = run_id or str(uuid.uuid4())
        missing = [name for name in graph.external_inputs if name not in inputs.files]
        if missing:
            raise UnresolvedInput(f"Workflow inputs not provided: {missing}")

        store = ArtifactStore()
        for name in graph.external_inputs:
            store.add_input(name, inputs.files[name])
        for ref in graph.final_outputs:
            store.protect(ref)
        for spec in graph.tasks.values():
            for decl in spec.inputs:
                store.register_consumer(decl.ref, spec.name)

        rank = graph.rank
        instances = {
            name: TaskInstance(spec=spec, rank=rank[name])
            for name, spec in graph.tasks.items()
        }
        declared = {name: i for i, name in enumerate(graph.tasks)}
        results: dict[str, RunResult] = {}
        retry = RetryController(
            self.resource_retry_multiplier,
            transition=lambda inst, state: self._transition(run_id, inst, state),
        )

        logger.info("Run %s of workflow %s started (%d tasks)", run_id, graph.id, len(instances))
        for instance in instances.values():
            self._notify(run_id, instance)

        running: dict[asyncio.Task, str] = {}
        try:
            while True:
                self._promote_ready(run_id, instances, store)
                ready = sorted(
                    (
                        i
                        for i in instances.values()
                        if i.state == TaskState.READY and i.name not in running.values()
                    ),
                    key=lambda i: (i.rank, declared[i.name]),
                )
                for instance in ready:
                    if len(running) >= self.max_concurrency:
                        break
                    attempt = self._make_attempt(run_id, store, inputs.params)
                    task = asyncio.create_task(retry.run(instance, attempt))
                    running[task] = instance.name

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: instances[running[t]].rank):
                    name = running.pop(task)
                    await self._finalize(
                        run_id, graph, instances, store, results, task.result()
                    )
                    logger.debug("Task %s finalized", name)
        finally:
            for task in running:
                task.cancel()

        status = RunState.SUCCESS
        if any(not r.succeeded for r in results.values()) or len(results) < len(instances):
            status = RunState.FAILED

        outputs = {}
        for ref in graph.final_outputs:
            if store.is_available(ref):
                outputs[ref.key] = await store.resolve(ref)

        logger.info("Run %s of workflow %s finished: %s", run_id, graph.id, status.value)
        return WorkflowResult(
            run_id=run_id,
            status=status,
            results=results,
            instances=instances,
            outputs=outputs,
        )

    def _promote_ready(
        self, run_id: str, instances: dict[str, TaskInstance], store: ArtifactStore
    ) -> None:
        for instance in instances.values():
            if instance.state != TaskState.PENDING or instance.cancelled:
                continue
            if all(store.is_available(decl.ref) for decl in instance.spec.inputs):
                self._transition(run_id, instance, TaskState.READY)

    def _make_attempt(self, run_id: str, store: ArtifactStore, params: dict[str, str]):
        async def attempt(instance: TaskInstance) -> dict[str, list[ResolvedArtifact]]:
            spec = instance.spec
            bound = {decl.name: await store.resolve(decl.ref) for decl in spec.inputs}
            sizes = [a.size_bytes for artifacts in bound.values() for a in artifacts]

            allocation = self.estimator.estimate(spec, sizes, instance.resource_scale)
            instance.allocation = allocation
            command = spec.render_command(bound, params, allocation)
            instance.command = command

            logger.info(
                "Dispatching %s attempt %d (cpu=%d memory=%gGB disk=%dGB image=%s)",
                spec.name,
                instance.attempts,
                allocation.cpu,
                allocation.memory_gb,
                allocation.disk_gb,
                allocation.image,
            )
            request = ExecutionRequest(
                run_id=run_id,
                task_name=spec.name,
                attempt=instance.attempts,
                command=command,
                inputs=bound,
                outputs=list(spec.outputs),
                resources=allocation,
                timeout_seconds=spec.timeout_seconds or self.default_timeout,
            )
            try:
                result = await self.backend.execute(request)
            except WorkflowError:
                raise
            except OSError as e:
                logger.error("Backend I/O error running %s: %s", spec.name, e)
                raise TransientFailure(f"Backend I/O error: {e}", spec.name) from e
            except Exception as e:
                logger.exception("Backend crashed running %s", spec.name)
                raise ToolFailure(f"Backend error: {e!r}", spec.name) from e
            instance.exit_code = result.exit_code
            instance.stdout_path = result.stdout_path
            instance.stderr_path = result.stderr_path
            instance.worker_id = result.worker_id

            failure = classify_failure(
                exit_code=result.exit_code,
                stderr_tail=result.stderr_tail,
                preempted=result.preempted,
                timed_out=result.timed_out,
                missing_outputs=result.missing_outputs,
                preempted_exit_codes=self.preempted_exit_codes,
            )
            if failure is not None:
                raise failure.to_error(spec.name, result.exit_code)
            return result.outputs

        return attempt

    async def _finalize(
        self,
        run_id: str,
        graph: WorkflowGraph,
        instances: dict[str, TaskInstance],
        store: ArtifactStore,
        results: dict[str, RunResult],
        result: RunResult,
    ) -> None:
        instance = instances[result.task_name]
        results[instance.name] = result

        if result.succeeded:
            for decl in instance.spec.outputs:
                store.record(instance.name, decl.name, result.outputs.get(decl.name, []))
            store.mark_succeeded(instance.name)
            instance.outputs = store.outputs_of(instance.name)
            self._transition(run_id, instance, TaskState.SUCCEEDED)
            await self._collect(store.release(instance.name))
            return

        store.mark_failed(instance.name)
        self._transition(run_id, instance, TaskState.FAILED_FINAL)
        logger.error(
            "Task %s failed finally after %d attempt(s): %s",
            instance.name,
            result.attempts,
            result.error,
        )
        collectable = store.release(instance.name)

        for name in sorted(graph.descendants(instance.name), key=lambda n: instances[n].rank):
            dependent = instances[name]
            if dependent.cancelled or dependent.state != TaskState.PENDING:
                continue
            dependent.cancelled = True
            dependent.error_kind = ErrorKind.DEPENDENCY_UNREACHABLE
            dependent.error = f"Upstream task '{instance.name}' failed"
            results[name] = RunResult(
                task_name=name,
                succeeded=False,
                attempts=0,
                error_kind=ErrorKind.DEPENDENCY_UNREACHABLE,
                error=dependent.error,
            )
            logger.warning("Cancelled %s: upstream task %s failed", name, instance.name)
            self._notify(run_id, dependent)
            collectable.extend(store.release(name))

        await self._collect(collectable)

    async def _collect(self, artifacts: list[ResolvedArtifact]) -> None:
        if self.collect_intermediates and artifacts:
            await self.backend.discard(artifacts)

    def _transition(self, run_id: str, instance: TaskInstance, state: TaskState) -> None:
        logger.debug("Task %s: %s -> %s", instance.name, instance.state.value, state.value)
        instance.state = state
        self._notify(run_id, instance)

    def _notify(self, run_id: str, instance: TaskInstance) -> None:
        if self.listener is not None:
            self.listener.task_changed(run_id, instance)
