import asyncio
import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path

from xenoflow.core.errors import EstimationError
from xenoflow.core.models import ResolvedArtifact
from xenoflow.core.resources import BYTES_PER_GB
from xenoflow.core.tasks import OutputDecl
from xenoflow.worker.schemas import ExecutionRequest, ExecutionResult

logger = logging.getLogger(__name__)

STDERR_TAIL_BYTES = 4096


def execute_command(
    command: str,
    cwd: Path,
    stdout_path: Path,
    stderr_path: Path,
    timeout: float | None = None,
) -> tuple[int | None, bool]:
    """Run a shell command, streaming output to files. Returns (exit_code, timed_out)."""
    with open(stdout_path, "w") as out, open(stderr_path, "w") as err:
        try:
            result = subprocess.run(
                f"set -o pipefail\n{command}",
                shell=True,
                executable="/bin/bash",
                cwd=cwd,
                stdout=out,
                stderr=err,
                text=True,
                timeout=timeout,
            )
            return result.returncode, False
        except subprocess.TimeoutExpired:
            err.write("\nCommand timed out\n")
            return None, True


def collect_outputs(
    attempt_dir: Path, decls: list[OutputDecl]
) -> tuple[dict[str, list[ResolvedArtifact]], list[str]]:
    """Resolve declared outputs. Wildcard sets come back in sorted path order."""
    outputs = {}
    missing = []
    for decl in decls:
        if decl.is_wildcard:
            paths = sorted(p for p in attempt_dir.glob(decl.pattern) if p.is_file())
        else:
            path = attempt_dir / decl.path
            if not path.is_file():
                missing.append(decl.name)
                continue
            paths = [path]
        outputs[decl.name] = [
            ResolvedArtifact(str(p.resolve()), p.stat().st_size) for p in paths
        ]
    return outputs, missing


def read_tail(path: Path, limit: int = STDERR_TAIL_BYTES) -> str:
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            f.seek(max(0, f.tell() - limit))
            return f.read().decode(errors="replace")
    except OSError:
        return ""


class LocalBackend:
    """Runs rendered commands on this host, optionally inside ``docker run``.

    Each attempt gets a fresh ``<work_dir>/<run>/<task>/attempt-N`` directory;
    directories of earlier attempts are removed first so a retry never sees
    partial outputs.
    """

    def __init__(
        self,
        work_dir: str,
        use_docker: bool = False,
        check_disk: bool = False,
        worker_id: str = "local",
    ):
        self.work_dir = Path(work_dir).resolve()
        self.use_docker = use_docker
        self.check_disk = check_disk
        self.worker_id = worker_id

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        return await asyncio.to_thread(self.execute_sync, request)

    async def discard(self, artifacts: list[ResolvedArtifact]) -> None:
        await asyncio.to_thread(self.discard_sync, [a.path for a in artifacts])

    def execute_sync(self, request: ExecutionRequest) -> ExecutionResult:
        task_dir = self.work_dir / request.run_id / request.task_name
        task_dir.mkdir(parents=True, exist_ok=True)
        self._check_disk(request, task_dir)

        attempt_dir = self._prepare_attempt_dir(task_dir, request.attempt)
        stdout_path = attempt_dir / "stdout"
        stderr_path = attempt_dir / "stderr"
        command = self._wrap(request, attempt_dir)

        logger.info(
            "[%s] Running %s attempt %d in %s",
            self.worker_id,
            request.task_name,
            request.attempt,
            attempt_dir,
        )
        try:
            exit_code, timed_out = execute_command(
                command, attempt_dir, stdout_path, stderr_path, request.timeout_seconds
            )
        except OSError as e:
            logger.error("[%s] Could not start %s: %s", self.worker_id, request.task_name, e)
            with open(stderr_path, "a") as err:
                err.write(f"Execution error: {e}\n")
            exit_code, timed_out = 127, False

        outputs, missing = {}, []
        if exit_code == 0:
            outputs, missing = collect_outputs(attempt_dir, request.outputs)

        logger.info(
            "[%s] Task %s attempt %d finished: exit=%s timed_out=%s",
            self.worker_id,
            request.task_name,
            request.attempt,
            exit_code,
            timed_out,
        )
        return ExecutionResult(
            exit_code=exit_code,
            stdout_path=str(stdout_path),
            stderr_path=str(stderr_path),
            outputs=outputs,
            missing_outputs=missing,
            timed_out=timed_out,
            stderr_tail=read_tail(stderr_path),
            worker_id=self.worker_id,
        )

    def discard_sync(self, paths: list[str]) -> None:
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
                logger.info("[%s] Discarded intermediate %s", self.worker_id, path)
            except OSError as e:
                logger.warning("[%s] Could not discard %s: %s", self.worker_id, path, e)

    def _prepare_attempt_dir(self, task_dir: Path, attempt: int) -> Path:
        for stale in task_dir.glob("attempt-*"):
            shutil.rmtree(stale, ignore_errors=True)
        attempt_dir = task_dir / f"attempt-{attempt}"
        attempt_dir.mkdir(parents=True)
        return attempt_dir

    def _check_disk(self, request: ExecutionRequest, task_dir: Path) -> None:
        if not self.check_disk:
            return
        free = shutil.disk_usage(task_dir).free
        needed = request.resources.disk_gb * BYTES_PER_GB
        if needed > free:
            raise EstimationError(
                f"Task '{request.task_name}' needs {request.resources.disk_gb} GB "
                f"but only {free / BYTES_PER_GB:.1f} GB is free on {self.worker_id}",
                request.task_name,
            )

    def _wrap(self, request: ExecutionRequest, attempt_dir: Path) -> str:
        if not self.use_docker:
            return request.command

        mounts = {str(attempt_dir)}
        for artifacts in request.inputs.values():
            for artifact in artifacts:
                mounts.add(str(Path(artifact.path).resolve().parent))

        args = [
            "docker", "run", "--rm",
            "--cpus", str(request.resources.cpu),
            "--memory", f"{request.resources.memory_gb:g}g",
            "-w", str(attempt_dir),
        ]
        for mount in sorted(mounts):
            args += ["-v", f"{mount}:{mount}"]
        args += [request.resources.image, "bash", "-c", f"set -o pipefail\n{request.command}"]
        return shlex.join(args)
