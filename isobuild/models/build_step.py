"""
Build Step Model
================
Pydantic model for one unit of work produced by the external planner.
This is the contract between the plan reader and every component of the engine.

Fields:
    index             — position in the planner's list; dependencies refer to it
    name              — human-readable step name (e.g. "cargo-build")
    image             — Docker image the step runs in
    command           — shell command executed inside the container
    working_directory — container working directory (default: /workspace)
    project_root      — host directory mounted read-only at /workspace
    artifact_mount    — container path of the writable artifact dir
    dependencies      — indices of steps that must succeed first
    cpu_limit         — CPU quota in cores (0 = no quota)
    memory_limit_mb   — memory limit in MB (0 = engine-computed allocation)

The core never mutates a BuildStep.
"""
from typing import FrozenSet
from pydantic import BaseModel, ConfigDict

from isobuild.core.constants import ARTIFACT_MOUNT, PROJECT_MOUNT


class BuildStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    name: str
    image: str
    command: str
    project_root: str
    working_directory: str = PROJECT_MOUNT
    artifact_mount: str = ARTIFACT_MOUNT
    dependencies: FrozenSet[int] = frozenset()
    cpu_limit: float = 0.0
    memory_limit_mb: int = 0

    @property
    def suite_id(self) -> str:
        """Identifier used when publishing this step's ResultRecord."""
        return f"{self.index}-{self.name}"
