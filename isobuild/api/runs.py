"""
Runs Endpoints
==============
Submit, inspect and interrupt engine runs over HTTP.

Routes:
    POST   /runs           — validate + schedule a BuildStep list, start the run
    GET    /runs/{run_id}  — live step states, or the final report once finished
    DELETE /runs/{run_id}  — interrupt (first graceful, second forced)

Invalid steps and dependency cycles are rejected with 400 before any
container is launched. Runs live in process memory only.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, field_validator

from isobuild.core.errors import ConfigurationError
from isobuild.engine.orchestrator import Orchestrator
from isobuild.executor.container_manager import ContainerManager
from isobuild.executor.scheduler import build_execution_plan
from isobuild.parser.plan_reader import build_step_from_fields

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Runs"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------
class BuildStepRequest(BaseModel):
    step_name: str
    docker_image: str
    build_command: str
    project_root: str = "."
    working_directory: Optional[str] = None
    artifact_mount: Optional[str] = None
    dependencies: List[int] = []
    cpu_cores: float = 0.0
    memory_limit_mb: int = 0

    @field_validator("step_name", "docker_image", "build_command")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("cpu_cores", "memory_limit_mb")
    @classmethod
    def not_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v


class RunRequest(BaseModel):
    build_steps: List[BuildStepRequest]
    max_parallel: Optional[int] = None


class RunSubmitted(BaseModel):
    run_id: str
    status: str
    execution_order: List[int]
    parallel_groups: List[List[int]]


# ---------------------------------------------------------------------------
# Run store
# ---------------------------------------------------------------------------
@dataclass
class RunEntry:
    orchestrator: Orchestrator
    task: "asyncio.Task"

    @property
    def finished(self) -> bool:
        return self.task.done()


class RunStore:
    """In-memory registry of runs started through the API."""

    def __init__(self) -> None:
        self._runs: Dict[str, RunEntry] = {}
        self._lock = threading.Lock()
        # Swapped in tests to avoid a Docker daemon
        self.manager_factory: Optional[Callable[[], ContainerManager]] = None
        self.orchestrator_options: Dict[str, object] = {}

    def add(self, entry: RunEntry) -> None:
        with self._lock:
            self._runs[entry.orchestrator.run_id] = entry

    def get(self, run_id: str) -> Optional[RunEntry]:
        with self._lock:
            return self._runs.get(run_id)

    def active(self) -> List[RunEntry]:
        with self._lock:
            return [e for e in self._runs.values() if not e.finished]

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()


store = RunStore()


def _get_entry(run_id: str) -> RunEntry:
    entry = store.get(run_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Unknown run: {run_id}")
    return entry


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("/runs", response_model=RunSubmitted, status_code=202)
async def submit_run(request: RunRequest):
    """Validate and schedule the steps, then start the run in the background."""
    try:
        steps = [
            build_step_from_fields(i, step.model_dump(exclude_none=True))
            for i, step in enumerate(request.build_steps)
        ]
        plan = build_execution_plan(steps)
    except ConfigurationError as e:
        logger.warning("Rejected run: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    manager = store.manager_factory() if store.manager_factory else None
    kwargs = {**store.orchestrator_options, "manager": manager, "report_path": None, "plan_path": None}
    if request.max_parallel is not None:
        kwargs["max_parallel"] = request.max_parallel
    orchestrator = Orchestrator(**kwargs)

    task = asyncio.create_task(orchestrator.run(steps))
    store.add(RunEntry(orchestrator=orchestrator, task=task))
    logger.info("[API:%s] Run started with %d step(s)", orchestrator.run_id, len(steps))

    return RunSubmitted(
        run_id=orchestrator.run_id,
        status="running",
        execution_order=plan.execution_order,
        parallel_groups=[g.steps for g in plan.groups],
    )


@router.get("/runs/{run_id}")
async def get_run(run_id: str):
    entry = _get_entry(run_id)
    orchestrator = entry.orchestrator
    if entry.finished:
        if entry.task.cancelled() or entry.task.exception() is not None:
            error = "cancelled" if entry.task.cancelled() else str(entry.task.exception())
            return {"run_id": run_id, "status": "error", "error": error}
        return {"status": "finished", **orchestrator.report.model_dump(mode="json")}

    steps = [
        {"index": s.index, "name": s.name, "status": s.status.value}
        for s in orchestrator.step_states()
    ]
    return {
        "run_id": run_id,
        "status": "running",
        "interrupted": orchestrator.termination.interrupted,
        "steps": steps,
    }


@router.delete("/runs/{run_id}")
async def interrupt_run(run_id: str):
    entry = _get_entry(run_id)
    if entry.finished:
        return {"run_id": run_id, "status": "finished"}
    result = entry.orchestrator.interrupt()
    return {"run_id": run_id, **result}
