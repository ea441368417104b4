import asyncio
import logging
from collections import defaultdict

from xenoflow.core.errors import DependencyUnreachable, UnresolvedInput
from xenoflow.core.models import ResolvedArtifact
from xenoflow.core.tasks import ArtifactRef, InputFile

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Outputs recorded per producing task, readable by any number of consumers.

    Writes are append-only and keyed by artifact; each artifact is recorded
    once. Wildcard sets are stored in the order the backend discovered them.
    """

    def __init__(self):
        self._artifacts: dict[str, list[ResolvedArtifact]] = {}
        self._producers: dict[str, asyncio.Future] = {}
        self._consumers: dict[str, set[str]] = defaultdict(set)
        self._protected: set[str] = set()

    def _producer_future(self, task_name: str) -> asyncio.Future:
        future = self._producers.get(task_name)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._producers[task_name] = future
        return future

    def add_input(self, name: str, input_file: InputFile) -> None:
        self._artifacts[name] = [ResolvedArtifact(input_file.path, input_file.size_bytes)]
        self._protected.add(name)

    def protect(self, ref: ArtifactRef) -> None:
        """Never report ``ref`` as collectable (final workflow outputs)."""
        self._protected.add(ref.key)

    def record(
        self, task_name: str, output_name: str, artifacts: list[ResolvedArtifact]
    ) -> None:
        key = f"{task_name}.{output_name}"
        if key in self._artifacts:
            raise ValueError(f"Artifact '{key}' has already been recorded")
        self._artifacts[key] = list(artifacts)
        logger.debug("Recorded %s (%d file(s))", key, len(artifacts))

    def mark_succeeded(self, task_name: str) -> None:
        future = self._producer_future(task_name)
        if not future.done():
            future.set_result(None)

    def mark_failed(self, task_name: str) -> None:
        future = self._producer_future(task_name)
        if not future.done():
            future.set_exception(
                DependencyUnreachable(
                    f"Producer '{task_name}' failed; its outputs will never exist",
                    task_name,
                )
            )
            # Consumers may never await it; avoid "exception was never retrieved".
            future.exception()

    def is_available(self, ref: ArtifactRef) -> bool:
        return ref.key in self._artifacts

    async def resolve(self, ref: ArtifactRef) -> list[ResolvedArtifact]:
        """Paths and sizes of ``ref``, waiting for its producer if needed."""
        if ref.key in self._artifacts:
            return list(self._artifacts[ref.key])
        if ref.is_external:
            raise UnresolvedInput(f"Workflow input '{ref.output}' was not provided")

        await asyncio.shield(self._producer_future(ref.producer))
        if ref.key not in self._artifacts:
            raise UnresolvedInput(
                f"Producer '{ref.producer}' succeeded without recording '{ref.key}'",
                ref.producer,
            )
        return list(self._artifacts[ref.key])

    def outputs_of(self, task_name: str) -> dict[str, list[ResolvedArtifact]]:
        prefix = f"{task_name}."
        return {
            key[len(prefix):]: list(artifacts)
            for key, artifacts in self._artifacts.items()
            if key.startswith(prefix)
        }

    def register_consumer(self, ref: ArtifactRef, consumer: str) -> None:
        self._consumers[ref.key].add(consumer)

    def release(self, consumer: str) -> list[ResolvedArtifact]:
        """Drop ``consumer``'s claims; return recorded artifacts nobody needs now."""
        collectable = []
        for key, consumers in self._consumers.items():
            if consumer not in consumers:
                continue
            consumers.discard(consumer)
            if not consumers and key not in self._protected and key in self._artifacts:
                collectable.extend(self._artifacts[key])
        return collectable
