import math
from dataclasses import dataclass

from xenoflow.core.errors import EstimationError
from xenoflow.core.models import ResourceAllocation
from xenoflow.core.tasks import TaskSpec

BYTES_PER_GB = 1000**3


@dataclass(frozen=True)
class ImageMinimum:
    cpu: int = 1
    memory_gb: float = 0.0


class ResourceEstimator:
    """Sizes a task's execution environment from its input artifact sizes.

    Pure: the same sizes and scale always give the same allocation. ``scale``
    grows memory and disk after a backend reported resource exhaustion.
    """

    def __init__(self, image_minimums: dict[str, ImageMinimum] | None = None):
        self.image_minimums = image_minimums or {}

    def estimate(
        self, spec: TaskSpec, input_sizes: list[int], scale: float = 1.0
    ) -> ResourceAllocation:
        profile = spec.resources
        if any(size < 0 for size in input_sizes):
            raise EstimationError(
                f"Task '{spec.name}' has an input with negative size", spec.name
            )
        if scale < 1.0:
            raise EstimationError(
                f"Task '{spec.name}' resource scale must be >= 1, got {scale}",
                spec.name,
            )

        total_gb = sum(input_sizes) / BYTES_PER_GB
        disk_gb = math.ceil(
            (profile.disk.base_offset + profile.disk.multiplier * total_gb) * scale
        )
        memory_gb = profile.memory_gb * scale

        if disk_gb <= 0:
            raise EstimationError(
                f"Task '{spec.name}' disk formula produced {disk_gb} GB", spec.name
            )
        if profile.cpu <= 0 or memory_gb <= 0:
            raise EstimationError(
                f"Task '{spec.name}' needs positive cpu and memory, got "
                f"cpu={profile.cpu} memory_gb={memory_gb}",
                spec.name,
            )

        minimum = self.image_minimums.get(profile.image)
        if minimum is not None:
            if profile.cpu < minimum.cpu:
                raise EstimationError(
                    f"Task '{spec.name}' requests {profile.cpu} cpu but image "
                    f"'{profile.image}' needs at least {minimum.cpu}",
                    spec.name,
                )
            if memory_gb < minimum.memory_gb:
                raise EstimationError(
                    f"Task '{spec.name}' requests {memory_gb} GB memory but image "
                    f"'{profile.image}' needs at least {minimum.memory_gb} GB",
                    spec.name,
                )

        return ResourceAllocation(
            cpu=profile.cpu,
            memory_gb=memory_gb,
            disk_gb=disk_gb,
            image=profile.image,
        )
