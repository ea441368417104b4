import asyncio
import os
import tempfile

os.environ.setdefault(
    "XENOFLOW_DB_PATH", os.path.join(tempfile.mkdtemp(), "xenoflow-test.db")
)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from xenoflow.core.models import ResolvedArtifact  # noqa: E402
from xenoflow.core.runs import get_run_manager  # noqa: E402
from xenoflow.db.database import create_session_factory, get_db, init_db  # noqa: E402
from xenoflow.main import app  # noqa: E402
from xenoflow.worker.schemas import ExecutionRequest, ExecutionResult  # noqa: E402


class ScriptedBackend:
    """In-memory backend. ``script[task]`` lists the outcome of each attempt:
    "ok", "fail", "preempt", "timeout", "oom" or "missing". Attempts beyond
    the script succeed.
    """

    def __init__(self, script=None, files=None, sizes=None, delay=0.0):
        self.script = script or {}
        self.files = files or {}
        self.sizes = sizes or {}
        self.delay = delay
        self.calls: list[ExecutionRequest] = []
        self.discarded: list[ResolvedArtifact] = []
        self.running = 0
        self.max_running = 0

    def attempts(self, task_name: str) -> int:
        return sum(1 for c in self.calls if c.task_name == task_name)

    def dispatch_order(self) -> list[str]:
        return [c.task_name for c in self.calls]

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.calls.append(request)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.running -= 1

        outcomes = self.script.get(request.task_name, [])
        index = request.attempt - 1
        outcome = outcomes[index] if index < len(outcomes) else "ok"

        if outcome == "preempt":
            return ExecutionResult(preempted=True)
        if outcome == "timeout":
            return ExecutionResult(timed_out=True)
        if outcome == "fail":
            return ExecutionResult(exit_code=1, stderr_tail="[E::main] bad input")
        if outcome == "oom":
            return ExecutionResult(exit_code=137, stderr_tail="Out of memory: killed")
        if outcome == "missing":
            return ExecutionResult(
                exit_code=0, missing_outputs=[d.name for d in request.outputs]
            )

        outputs = {}
        for decl in request.outputs:
            names = self.files.get(request.task_name, {}).get(decl.name)
            if names is None:
                names = [decl.target]
            outputs[decl.name] = [
                ResolvedArtifact(
                    f"/work/{request.task_name}/{name}",
                    self.sizes.get(f"{request.task_name}.{decl.name}", 1000),
                )
                for name in names
            ]
        return ExecutionResult(exit_code=0, outputs=outputs, worker_id="scripted")

    async def discard(self, artifacts):
        self.discarded.extend(artifacts)


class FakeRunManager:
    def __init__(self):
        self.submitted = []

    def submit(self, run_id, graph, inputs):
        self.submitted.append((run_id, graph, inputs))

    async def shutdown(self):
        pass


@pytest.fixture()
def scripted_backend():
    return ScriptedBackend


@pytest.fixture()
def run_manager():
    return FakeRunManager()


@pytest.fixture()
def client(tmp_path, run_manager):
    """Provide a TestClient with a fresh temporary database per test."""
    engine, TestSession = create_session_factory(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)

    def override_get_db():
        db = TestSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_run_manager] = lambda: run_manager
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
