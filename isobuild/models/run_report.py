"""
Run Report Model
================
Pydantic models describing the state of every step in one orchestrator run.

Per-step state machine:
    pending → running → succeeded | failed | aborted

Fields (StepOutcome):
    index / name      — the BuildStep this outcome belongs to
    status            — current StepState
    exit_code         — command exit code (None if never executed)
    duration          — wall clock seconds spent executing
    container_id      — container that ran the step ("" if none launched)
    error             — infrastructure or abort reason
    result_file       — published ResultRecord path
    log_excerpt       — abbreviated stdout + stderr

The report never collapses to a single success bit: ``steps`` always lists
every step with its own status and exit code.
"""
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel

from isobuild.models.execution_plan import ExecutionPlan


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (StepState.SUCCEEDED, StepState.FAILED, StepState.ABORTED)


class StepOutcome(BaseModel):
    index: int
    name: str
    status: StepState = StepState.PENDING
    exit_code: Optional[int] = None
    duration: float = 0.0
    container_id: str = ""
    error: str = ""
    result_file: str = ""
    log_excerpt: str = ""
    total_tests: Optional[int] = None
    passed_tests: Optional[int] = None
    failed_tests: Optional[int] = None
    skipped_tests: Optional[int] = None


class RunReport(BaseModel):
    run_id: str
    plan: ExecutionPlan = ExecutionPlan()
    steps: List[StepOutcome] = []
    success: bool = False
    interrupted: bool = False
    exit_code: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0
    error: str = ""

    @property
    def failed_steps(self) -> List[StepOutcome]:
        return [s for s in self.steps if s.status in (StepState.FAILED, StepState.ABORTED)]

    def outcome(self, index: int) -> Optional[StepOutcome]:
        for step in self.steps:
            if step.index == index:
                return step
        return None
