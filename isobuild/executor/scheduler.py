"""
Dependency Scheduler
====================
Partitions build steps into ordered execution groups with a layered
topological sort (Kahn's algorithm).

    group 0 — steps without prerequisites
    group k — remaining steps whose prerequisites all lie in groups 0..k-1

Every step appears in exactly one group; steps inside a group are ordered
by index. The plan is computed once per run, before any container starts.

A dependency cycle, a self-dependency, a duplicate index or a reference to
an unknown step is a fatal ConfigurationError. The scheduler never returns
a partial schedule.
"""
import logging
from typing import Iterable

from isobuild.core.errors import ConfigurationError
from isobuild.models.build_step import BuildStep
from isobuild.models.execution_plan import ExecutionGroup, ExecutionPlan

logger = logging.getLogger(__name__)


def _validate(steps: list[BuildStep]) -> dict[int, BuildStep]:
    by_index: dict[int, BuildStep] = {}
    for step in steps:
        if step.index in by_index:
            raise ConfigurationError(f"duplicate build step index {step.index}")
        by_index[step.index] = step

    for step in steps:
        if step.index in step.dependencies:
            raise ConfigurationError(
                f"dependency cycle: step {step.index} ({step.name}) depends on itself"
            )
        unknown = sorted(d for d in step.dependencies if d not in by_index)
        if unknown:
            raise ConfigurationError(
                f"build step {step.index} ({step.name}) depends on unknown step(s): "
                f"{', '.join(map(str, unknown))}"
            )
    return by_index


def build_execution_plan(steps: Iterable[BuildStep]) -> ExecutionPlan:
    """
    Compute the ordered execution groups for a set of build steps.

    Parameters
    ----------
    steps : Iterable[BuildStep]
        Steps with prerequisite indices forming a DAG.

    Returns
    -------
    ExecutionPlan
        Groups in run order. An empty input yields an empty plan.

    Raises
    ------
    ConfigurationError
        On cycles, self-dependencies, duplicate or unknown indices.
    """
    steps = list(steps)
    by_index = _validate(steps)

    # in-degree = number of unscheduled prerequisites
    remaining: dict[int, set[int]] = {
        idx: set(step.dependencies) for idx, step in by_index.items()
    }
    dependents: dict[int, list[int]] = {idx: [] for idx in by_index}
    for idx, deps in remaining.items():
        for dep in deps:
            dependents[dep].append(idx)

    groups: list[ExecutionGroup] = []
    ready = sorted(idx for idx, deps in remaining.items() if not deps)

    while ready:
        groups.append(ExecutionGroup(index=len(groups), steps=ready))
        next_ready: list[int] = []
        for idx in ready:
            del remaining[idx]
            for child in dependents[idx]:
                deps = remaining[child]
                deps.discard(idx)
                if not deps:
                    next_ready.append(child)
        ready = sorted(next_ready)

    if remaining:
        cycle = ", ".join(
            f"{idx} ({by_index[idx].name})" for idx in sorted(remaining)
        )
        raise ConfigurationError(f"dependency cycle detected among build steps: {cycle}")

    plan = ExecutionPlan(groups=groups)
    logger.info(
        "[SCHED] %d step(s) in %d group(s) | order=%s",
        len(by_index), len(groups), plan.execution_order,
    )
    return plan
