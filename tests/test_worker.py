import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from xenoflow.core.errors import EstimationError, ToolFailure, TransientFailure
from xenoflow.core.models import ResolvedArtifact, ResourceAllocation
from xenoflow.core.tasks import OutputDecl
from xenoflow.worker import server
from xenoflow.worker.client import HttpBackend
from xenoflow.worker.executor import LocalBackend
from xenoflow.worker.schemas import ExecutionRequest


def _request(command="echo done > done.txt", disk_gb=1):
    return ExecutionRequest(
        run_id="run-1",
        task_name="step",
        attempt=1,
        command=command,
        outputs=[OutputDecl(name="done", path="done.txt")],
        resources=ResourceAllocation(cpu=1, memory_gb=1.0, disk_gb=disk_gb, image="tools:1"),
    )


@pytest.fixture()
def worker_backend(tmp_path, monkeypatch):
    backend = LocalBackend(str(tmp_path), check_disk=True, worker_id="worker-test")
    monkeypatch.setattr(server, "backend", backend)
    return backend


def test_health():
    with TestClient(server.app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_execute_returns_result(worker_backend):
    with TestClient(server.app) as client:
        response = client.post("/execute", json=_request().model_dump(mode="json"))
    assert response.status_code == 200
    data = response.json()
    assert data["exit_code"] == 0
    assert data["worker_id"] == "worker-test"
    assert data["outputs"]["done"][0]["size_bytes"] == len("done\n")


def test_execute_rejects_oversized_disk(worker_backend):
    with TestClient(server.app) as client:
        response = client.post(
            "/execute", json=_request(disk_gb=10**9).model_dump(mode="json")
        )
    assert response.status_code == 422
    assert response.json()["detail"]["kind"] == "EstimationError"


def test_discard_endpoint(tmp_path, worker_backend):
    target = tmp_path / "old.sam"
    target.write_text("x")
    with TestClient(server.app) as client:
        response = client.post("/discard", json={"paths": [str(target)]})
    assert response.json() == {"status": "ok", "discarded": 1}
    assert not target.exists()


def test_http_backend_round_trip_through_worker(worker_backend):
    backend = HttpBackend(
        ["http://worker"], transport=httpx.ASGITransport(app=server.app)
    )
    result = asyncio.run(backend.execute(_request()))
    assert result.exit_code == 0
    assert result.outputs["done"][0].path.endswith("attempt-1/done.txt")


def test_http_backend_maps_estimation_rejection(worker_backend):
    backend = HttpBackend(
        ["http://worker"], transport=httpx.ASGITransport(app=server.app)
    )
    with pytest.raises(EstimationError):
        asyncio.run(backend.execute(_request(disk_gb=10**9)))


def test_http_backend_round_robins_workers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        return httpx.Response(200, json={"exit_code": 0})

    backend = HttpBackend(
        ["http://w1:8001", "http://w2:8002"], transport=httpx.MockTransport(handler)
    )

    async def scenario():
        for _ in range(3):
            await backend.execute(_request())

    asyncio.run(scenario())
    assert seen == ["w1", "w2", "w1"]


def test_lost_worker_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = HttpBackend(["http://w1"], transport=httpx.MockTransport(handler))
    with pytest.raises(TransientFailure):
        asyncio.run(backend.execute(_request()))


def test_worker_error_status_is_transient():
    backend = HttpBackend(
        ["http://w1"],
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")),
    )
    with pytest.raises(TransientFailure):
        asyncio.run(backend.execute(_request()))


def test_http_backend_discard_posts_paths():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(request.read())
        return httpx.Response(200, json={"status": "ok"})

    backend = HttpBackend(["http://w1"], transport=httpx.MockTransport(handler))
    asyncio.run(backend.discard([ResolvedArtifact("/work/a.sam", 1)]))
    assert b"/work/a.sam" in bodies[0]


def test_http_backend_needs_workers():
    with pytest.raises(ValueError):
        HttpBackend([])


def test_worker_schema_rejection_is_a_tool_failure():
    backend = HttpBackend(
        ["http://w1"],
        transport=httpx.MockTransport(
            lambda request: httpx.Response(
                422, json={"detail": [{"loc": ["body", "command"], "msg": "Field required"}]}
            )
        ),
    )
    with pytest.raises(ToolFailure):
        asyncio.run(backend.execute(_request()))


def test_malformed_worker_result_is_transient():
    backend = HttpBackend(
        ["http://w1"],
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"exit_code": "not-a-number"})
        ),
    )
    with pytest.raises(TransientFailure):
        asyncio.run(backend.execute(_request()))
