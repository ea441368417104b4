import asyncio
import json

import pytest

from xenoflow import config
from xenoflow.core.dag import build_graph
from xenoflow.core.runs import RunManager
from xenoflow.core.tasks import WorkflowDefinition, WorkflowInputs
from xenoflow.db import repository
from xenoflow.db.database import create_session_factory, init_db

INPUTS = WorkflowInputs(files={"sample": {"path": "/data/sample.bam", "size_bytes": 1000}})


@pytest.fixture()
def session_factory(tmp_path):
    engine, Session = create_session_factory(f"sqlite:///{tmp_path / 'runs.db'}")
    init_db(bind=engine)
    return Session


def _start(session_factory, tasks):
    definition = WorkflowDefinition.model_validate(
        {"id": "wf", "inputs": ["sample"], "tasks": tasks}
    )
    db = session_factory()
    try:
        repository.create_workflow(db, "wf", definition.model_dump(mode="json"))
        run = repository.create_run(
            db, "wf", [t.model_dump() for t in definition.tasks], INPUTS.model_dump()
        )
        run_id = run.id
    finally:
        db.close()
    return run_id, build_graph(definition)


def _task(name, **resources):
    return {
        "name": name,
        "command": f"tool-{name} {{inputs[bam]}}",
        "inputs": [{"name": "bam", "ref": "sample"}],
        "outputs": [{"name": "out", "path": f"{name}.txt"}],
        "resources": resources,
    }


def test_run_is_archived(session_factory, scripted_backend):
    run_id, graph = _start(session_factory, [_task("header")])
    manager = RunManager(scripted_backend(), session_factory)

    asyncio.run(manager._run(run_id, graph, INPUTS))

    db = session_factory()
    run = repository.get_run(db, run_id)
    task = repository.get_task_instance(db, run_id, "header")
    assert run.status == "SUCCESS"
    assert task.status == "SUCCEEDED"
    assert task.command == "tool-header /data/sample.bam"
    assert json.loads(task.outputs)["out"][0]["path"] == "/work/header/header.txt"
    db.close()


def test_under_provisioned_aligner_is_rejected(session_factory, scripted_backend):
    run_id, graph = _start(
        session_factory,
        [
            _task("align", image=config.BWA_IMAGE, memory_gb=4.0),
            _task("header", image=config.SAMTOOLS_IMAGE),
        ],
    )
    backend = scripted_backend()
    manager = RunManager(backend, session_factory)

    asyncio.run(manager._run(run_id, graph, INPUTS))

    db = session_factory()
    run = repository.get_run(db, run_id)
    align = repository.get_task_instance(db, run_id, "align")
    header = repository.get_task_instance(db, run_id, "header")
    assert run.status == "FAILED"
    assert "align" in run.error
    assert align.status == "FAILED_FINAL"
    assert align.error_kind == "EstimationError"
    assert header.status == "SUCCEEDED"
    assert backend.dispatch_order() == ["header"]
    db.close()
