import logging

import httpx

from xenoflow.core.errors import EstimationError, ToolFailure, TransientFailure
from xenoflow.core.models import ResolvedArtifact
from xenoflow.worker.schemas import DiscardRequest, ExecutionRequest, ExecutionResult

logger = logging.getLogger(__name__)

# Added on top of the task's own timeout so the worker can report it first.
RESPONSE_GRACE_SECONDS = 30.0


class HttpBackend:
    """Dispatches attempts round-robin to remote workers (``run_worker.py``).

    A worker that cannot be reached or drops the request is treated like a
    preempted machine: the attempt fails with TransientFailure.
    """

    def __init__(
        self,
        worker_urls: list[str],
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not worker_urls:
            raise ValueError("HttpBackend needs at least one worker URL")
        self.worker_urls = worker_urls
        self._worker_index = 0
        self._transport = transport

    def _next_worker_url(self) -> str:
        url = self.worker_urls[self._worker_index % len(self.worker_urls)]
        self._worker_index += 1
        return url

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        worker_url = self._next_worker_url()
        timeout = None
        if request.timeout_seconds is not None:
            timeout = request.timeout_seconds + RESPONSE_GRACE_SECONDS

        logger.info(
            "Dispatching %s attempt %d to %s",
            request.task_name,
            request.attempt,
            worker_url,
        )
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{worker_url}/execute",
                    json=request.model_dump(mode="json"),
                    timeout=timeout,
                )
        except httpx.HTTPError as e:
            logger.error("Failed to dispatch to %s: %s", worker_url, e)
            raise TransientFailure(
                f"Worker {worker_url} lost: {e}", request.task_name
            ) from e

        if resp.status_code == 422:
            detail = resp.json().get("detail")
            if isinstance(detail, dict) and detail.get("kind") == "EstimationError":
                raise EstimationError(detail.get("message", resp.text), request.task_name)
        if 400 <= resp.status_code < 500:
            logger.error("Worker %s refused task: %s", worker_url, resp.text)
            raise ToolFailure(
                f"Worker {worker_url} refused the request with HTTP {resp.status_code}",
                request.task_name,
            )
        if resp.status_code != 200:
            logger.error("Worker %s rejected task: %s", worker_url, resp.text)
            raise TransientFailure(
                f"Worker {worker_url} returned HTTP {resp.status_code}",
                request.task_name,
            )

        try:
            result = ExecutionResult.model_validate(resp.json())
        except ValueError as e:
            logger.error("Worker %s sent an unreadable result: %s", worker_url, e)
            raise TransientFailure(
                f"Worker {worker_url} returned a malformed result", request.task_name
            ) from e
        if result.worker_id is None:
            result.worker_id = worker_url
        return result

    async def discard(self, artifacts: list[ResolvedArtifact]) -> None:
        if not artifacts:
            return
        worker_url = self._next_worker_url()
        payload = DiscardRequest(paths=[a.path for a in artifacts])
        try:
            async with self._client() as client:
                await client.post(
                    f"{worker_url}/discard", json=payload.model_dump(), timeout=10.0
                )
        except httpx.HTTPError as e:
            logger.warning("Discard request to %s failed: %s", worker_url, e)
