"""Static workflow declarations.

Everything in this module is immutable once constructed. A workflow is a list
of TaskSpecs whose inputs point at outputs of other tasks (``"task.output"``)
or at external workflow inputs (``"input_name"``).
"""

import re
import shlex

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from xenoflow.core.errors import UnresolvedInput
from xenoflow.core.models import ResolvedArtifact, ResourceAllocation

NAME_PATTERN = r"^[A-Za-z0-9_\-]+$"
PARAM_VALUE_PATTERN = r"[A-Za-z0-9_.,:+=@%/\-]*"


class ArtifactRef(BaseModel):
    """Reference to an artifact: ``producer.output``, or an external input."""

    model_config = ConfigDict(frozen=True)

    producer: str | None = None
    output: str

    @model_validator(mode="before")
    @classmethod
    def _parse_shorthand(cls, value):
        if isinstance(value, str):
            producer, sep, output = value.partition(".")
            if not sep:
                return {"producer": None, "output": value}
            return {"producer": producer, "output": output}
        return value

    @classmethod
    def parse(cls, value: str) -> "ArtifactRef":
        return cls.model_validate(value)

    @property
    def is_external(self) -> bool:
        return self.producer is None

    @property
    def key(self) -> str:
        if self.producer is None:
            return self.output
        return f"{self.producer}.{self.output}"

    def __str__(self) -> str:
        return self.key


class InputDecl(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=NAME_PATTERN)
    ref: ArtifactRef


class OutputDecl(BaseModel):
    """A fixed output filename, or a glob pattern resolved after execution."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=NAME_PATTERN)
    path: str | None = None
    pattern: str | None = None

    @model_validator(mode="after")
    def _exactly_one_target(self):
        if (self.path is None) == (self.pattern is None):
            raise ValueError(
                f"Output '{self.name}' must declare exactly one of 'path' or 'pattern'"
            )
        return self

    @property
    def is_wildcard(self) -> bool:
        return self.pattern is not None

    @property
    def target(self) -> str:
        return self.pattern if self.pattern is not None else self.path


class DiskFormula(BaseModel):
    """disk_gb = ceil(base_offset + multiplier * sum(input sizes in GB))"""

    model_config = ConfigDict(frozen=True)

    base_offset: float = 10.0
    multiplier: float = Field(default=1.0, ge=0)


class ResourceProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpu: int = 1
    memory_gb: float = 2.0
    disk: DiskFormula = Field(default_factory=DiskFormula)
    image: str = "ubuntu:22.04"


class TaskSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=NAME_PATTERN)
    command: str
    inputs: list[InputDecl] = Field(default_factory=list)
    outputs: list[OutputDecl] = Field(default_factory=list)
    resources: ResourceProfile = Field(default_factory=ResourceProfile)
    preemptible: bool = False
    max_retries: int = Field(default=0, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _unique_bindings(self):
        for label, decls in (("input", self.inputs), ("output", self.outputs)):
            seen = set()
            for decl in decls:
                if decl.name in seen:
                    raise ValueError(
                        f"Task '{self.name}' has duplicate {label} name: '{decl.name}'"
                    )
                seen.add(decl.name)
        return self

    def output(self, name: str) -> OutputDecl | None:
        for decl in self.outputs:
            if decl.name == name:
                return decl
        return None

    def render_command(
        self,
        inputs: dict[str, list[ResolvedArtifact]],
        params: dict[str, str],
        allocation: ResourceAllocation,
    ) -> str:
        """Interpolate the command template.

        ``{inputs[name]}`` expands to the space-joined paths of an input,
        ``{inputs[name][0]}`` to a single member of a wildcard set,
        ``{outputs[name]}`` to the declared filename or pattern,
        ``{params[key]}`` to a workflow parameter, and ``{cpu}``,
        ``{memory_gb}``, ``{disk_gb}`` to the allocation.
        """
        bindings = {
            name: PathList(shlex.quote(a.path) for a in artifacts)
            for name, artifacts in inputs.items()
        }
        outputs = {decl.name: decl.target for decl in self.outputs}
        try:
            return self.command.format(
                inputs=bindings,
                outputs=outputs,
                params=params,
                cpu=allocation.cpu,
                memory_gb=allocation.memory_gb,
                disk_gb=allocation.disk_gb,
            )
        except (KeyError, IndexError) as e:
            raise UnresolvedInput(
                f"Command template of task '{self.name}' references "
                f"an unknown binding: {e}",
                task_name=self.name,
            ) from e


class PathList(list):
    """Paths bound to one input; formats as a space-separated argument list."""

    def __format__(self, format_spec: str) -> str:
        return format(" ".join(self), format_spec)


class InputFile(BaseModel):
    path: str
    size_bytes: int = Field(ge=0)


class WorkflowInputs(BaseModel):
    """Files and sample metadata provisioned before a run starts."""

    files: dict[str, InputFile] = Field(default_factory=dict)
    params: dict[str, str] = Field(default_factory=dict)

    # Params are substituted into commands unquoted, often inside quoted
    # tool arguments such as a read-group string.
    @field_validator("params")
    @classmethod
    def _shell_safe_params(cls, params: dict[str, str]) -> dict[str, str]:
        for key, value in params.items():
            if not re.fullmatch(PARAM_VALUE_PATTERN, value):
                raise ValueError(
                    f"Parameter '{key}' has characters not allowed in a command: {value!r}"
                )
        return params


class WorkflowDefinition(BaseModel):
    id: str
    inputs: list[str] = Field(default_factory=list)
    tasks: list[TaskSpec] = Field(min_length=1)
    outputs: list[ArtifactRef] = Field(default_factory=list)
