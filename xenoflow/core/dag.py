import heapq
from dataclasses import dataclass, field

from pydantic import ValidationError

from xenoflow.core.errors import CycleDetected, UnresolvedInput, WorkflowError
from xenoflow.core.tasks import ArtifactRef, TaskSpec, WorkflowDefinition


@dataclass
class WorkflowGraph:
    """Validated workflow. ``dependencies[a]`` holds the tasks ``a`` consumes from."""

    id: str
    tasks: dict[str, TaskSpec]
    dependencies: dict[str, set[str]]
    dependents: dict[str, set[str]]
    order: list[str]
    external_inputs: list[str] = field(default_factory=list)
    final_outputs: list[ArtifactRef] = field(default_factory=list)

    @property
    def rank(self) -> dict[str, int]:
        return {name: i for i, name in enumerate(self.order)}

    def descendants(self, name: str) -> set[str]:
        """Every task whose inputs transitively depend on ``name``."""
        seen: set[str] = set()
        stack = list(self.dependents.get(name, ()))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self.dependents.get(node, ()))
        return seen


def build_graph(definition: WorkflowDefinition) -> WorkflowGraph:
    """Index producers and consumers, derive edges and topologically sort.

    Raises UnresolvedInput for references nothing produces and CycleDetected
    when the edge relation is not acyclic.
    """
    tasks: dict[str, TaskSpec] = {}
    for spec in definition.tasks:
        if spec.name in tasks:
            raise UnresolvedInput(f"Duplicate task name: '{spec.name}'", spec.name)
        tasks[spec.name] = spec

    external = set(definition.inputs)
    dependencies: dict[str, set[str]] = {name: set() for name in tasks}
    dependents: dict[str, set[str]] = {name: set() for name in tasks}

    for spec in definition.tasks:
        for decl in spec.inputs:
            _check_ref(decl.ref, tasks, external, f"Task '{spec.name}' input '{decl.name}'")
            if decl.ref.producer is not None:
                dependencies[spec.name].add(decl.ref.producer)
                dependents[decl.ref.producer].add(spec.name)

    for ref in definition.outputs:
        _check_ref(ref, tasks, external, "Workflow output")

    order = _topological_order(list(tasks), dependencies, dependents)

    return WorkflowGraph(
        id=definition.id,
        tasks=tasks,
        dependencies=dependencies,
        dependents=dependents,
        order=order,
        external_inputs=list(definition.inputs),
        final_outputs=list(definition.outputs),
    )


def _check_ref(
    ref: ArtifactRef, tasks: dict[str, TaskSpec], external: set[str], where: str
) -> None:
    if ref.producer is None:
        if ref.output not in external:
            raise UnresolvedInput(
                f"{where} references undeclared workflow input: '{ref.output}'"
            )
        return
    producer = tasks.get(ref.producer)
    if producer is None:
        raise UnresolvedInput(f"{where} references unknown task: '{ref.producer}'")
    if producer.output(ref.output) is None:
        raise UnresolvedInput(
            f"{where} references unknown output: '{ref.key}'", producer.name
        )


def _topological_order(
    names: list[str],
    dependencies: dict[str, set[str]],
    dependents: dict[str, set[str]],
) -> list[str]:
    """Kahn's algorithm; ties among ready nodes break by declaration order."""
    position = {name: i for i, name in enumerate(names)}
    in_degree = {name: len(dependencies[name]) for name in names}

    heap = [(position[n], n) for n in names if in_degree[n] == 0]
    heapq.heapify(heap)
    order = []

    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for dependent in dependents[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(heap, (position[dependent], dependent))

    if len(order) != len(names):
        raise CycleDetected([n for n in names if in_degree[n] > 0])
    return order


def validate_dag(definition: dict) -> list[str]:
    """Validate a workflow DAG definition. Returns a list of errors (empty = valid)."""
    try:
        parsed = WorkflowDefinition.model_validate(definition)
    except ValidationError as e:
        return [_format_validation_error(err) for err in e.errors()]

    try:
        build_graph(parsed)
    except WorkflowError as e:
        return [e.message]
    return []


def _format_validation_error(err: dict) -> str:
    location = ".".join(str(part) for part in err["loc"])
    if not location:
        return err["msg"]
    return f"{location}: {err['msg']}"
