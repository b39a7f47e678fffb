"""
Plan Reader
===========
Turns the planner's BuildStep list into typed BuildStep models and
serializes computed execution plans back to flat data.

Accepted inputs:
    - Flat data (``build_steps_count`` + ``build_steps_<i>_<field>``)
    - YAML (``build_steps:`` list of mappings with the same field names)

Per-step fields:
    step_name          (required)
    docker_image       (required)
    build_command      (required)
    project_root       (default ".", must exist on the host)
    working_directory  (default /workspace)
    artifact_mount     (default /tmp/build-artifacts)
    dependencies       comma-separated step indices (or a YAML list)
    cpu_cores          CPU quota in cores (0 = unset)
    memory_limit_mb    memory limit in MB (0 = engine-computed)

Every validation failure raises ConfigurationError before any container
or pool slot is touched.
"""
import os
import logging
from typing import Any, Iterable

import yaml

from isobuild.core.constants import ARTIFACT_MOUNT, PROJECT_MOUNT
from isobuild.core.errors import ConfigurationError
from isobuild.models.build_step import BuildStep
from isobuild.models.execution_plan import ExecutionPlan
from isobuild.parser.flat_data import parse_flat, get_array, dump_flat, get_int

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("step_name", "docker_image", "build_command")
_YAML_SUFFIXES = (".yml", ".yaml")


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------
def parse_dependencies(raw: Any, step_index: int) -> frozenset[int]:
    """
    Parse a dependency list into a set of step indices.

    Accepts ``"0,2"``, ``"0, 2"``, ``""``, ``None`` or a list of ints/strings.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, (list, tuple, set)):
        parts = [str(p) for p in raw]
    else:
        parts = str(raw).split(",")

    indices: set[int] = set()
    for part in parts:
        part = part.strip()
        if not part:
            continue
        try:
            indices.add(int(part))
        except ValueError:
            raise ConfigurationError(
                f"build step {step_index}: invalid dependency index {part!r}"
            ) from None
    return frozenset(indices)


def _as_float(raw: Any, field: str, step_index: int) -> float:
    if raw in (None, ""):
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"build step {step_index}: {field} must be numeric, got {raw!r}") from None
    if value < 0:
        raise ConfigurationError(f"build step {step_index}: {field} must not be negative")
    return value


def build_step_from_fields(
    index: int,
    fields: dict[str, Any],
    base_dir: str = ".",
) -> BuildStep:
    """
    Validate one step's raw fields and build a BuildStep.

    Parameters
    ----------
    index : int
        Step index (position in the planner's list).
    fields : dict
        Field name → raw value (strings from flat data, any scalar from YAML).
    base_dir : str
        Directory relative project roots are resolved against.

    Raises
    ------
    ConfigurationError
        Missing required field, nonexistent project root, bad numeric value.
    """
    missing = [f for f in _REQUIRED_FIELDS if not str(fields.get(f) or "").strip()]
    if missing:
        raise ConfigurationError(
            f"build step {index}: missing required field(s): {', '.join(missing)}"
        )

    project_root = str(fields.get("project_root") or ".").strip()
    if not os.path.isabs(project_root):
        project_root = os.path.join(base_dir, project_root)
    project_root = os.path.realpath(project_root)
    if not os.path.isdir(project_root):
        raise ConfigurationError(
            f"build step {index}: project root directory does not exist: {project_root}"
        )

    return BuildStep(
        index=index,
        name=str(fields["step_name"]).strip(),
        image=str(fields["docker_image"]).strip(),
        command=str(fields["build_command"]).strip(),
        project_root=project_root,
        working_directory=str(fields.get("working_directory") or PROJECT_MOUNT).strip(),
        artifact_mount=str(fields.get("artifact_mount") or ARTIFACT_MOUNT).strip(),
        dependencies=parse_dependencies(fields.get("dependencies"), index),
        cpu_limit=_as_float(fields.get("cpu_cores"), "cpu_cores", index),
        memory_limit_mb=int(_as_float(fields.get("memory_limit_mb"), "memory_limit_mb", index)),
    )


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------
def read_flat_steps(text: str, base_dir: str = ".") -> list[BuildStep]:
    """Parse a flat-data BuildStep list."""
    data = parse_flat(text)
    if "build_steps_count" not in data:
        raise ConfigurationError("build plan is missing build_steps_count")
    count = get_int(data, "build_steps_count", default=-1)
    if count < 0:
        raise ConfigurationError(
            f"build_steps_count must be a non-negative integer, got {data['build_steps_count']!r}"
        )
    items = get_array(data, "build_steps")
    return [build_step_from_fields(i, fields, base_dir) for i, fields in enumerate(items)]


def read_yaml_steps(text: str, base_dir: str = ".") -> list[BuildStep]:
    """Parse a YAML document holding a ``build_steps`` list."""
    try:
        doc = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML build plan: {e}") from e

    if not isinstance(doc, dict) or not isinstance(doc.get("build_steps", []), list):
        raise ConfigurationError("YAML build plan must be a mapping with a 'build_steps' list")

    steps: list[BuildStep] = []
    for i, fields in enumerate(doc.get("build_steps") or []):
        if not isinstance(fields, dict):
            raise ConfigurationError(f"build step {i}: expected a mapping, got {type(fields).__name__}")
        steps.append(build_step_from_fields(i, fields, base_dir))
    return steps


def load_build_steps(path: str) -> list[BuildStep]:
    """
    Load a BuildStep list from a file (YAML by suffix, flat data otherwise).

    Relative project roots resolve against the plan file's directory.
    """
    if not os.path.isfile(path):
        raise ConfigurationError(f"build plan not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        text = f.read()

    base_dir = os.path.dirname(os.path.abspath(path))
    if path.endswith(_YAML_SUFFIXES):
        steps = read_yaml_steps(text, base_dir)
    else:
        steps = read_flat_steps(text, base_dir)

    logger.info("Loaded %d build step(s) from %s", len(steps), path)
    return steps


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------
def _join(indices: Iterable[int]) -> str:
    return ",".join(str(i) for i in indices)


def dump_plan(plan: ExecutionPlan) -> str:
    """
    Serialize an ExecutionPlan to flat data.

    Keys: ``execution_order_count``, ``execution_order_steps``,
    ``parallel_groups_count``, ``parallel_groups_<i>_step_count``,
    ``parallel_groups_<i>_steps``.
    """
    order = plan.execution_order
    pairs: list[tuple[str, object]] = [
        ("execution_order_count", len(order)),
        ("execution_order_steps", _join(order)),
        ("parallel_groups_count", len(plan.groups)),
    ]
    for group in plan.groups:
        pairs.append((f"parallel_groups_{group.index}_step_count", len(group.steps)))
        pairs.append((f"parallel_groups_{group.index}_steps", _join(group.steps)))
    return dump_flat(pairs)

