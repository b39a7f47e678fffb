"""
Result Record Model
===================
Outcome of one container execution, published atomically to the shared
temp directory and read back by the poller.

Fields:
    suite_id      — authoritative id of the published suite/step
    step_index    — BuildStep index (-1 when published by a foreign writer)
    container_id  — runtime id of the container that ran the command
    test_status   — "passed" | "failed" | "running"
    exit_code     — command exit code
    duration      — wall clock seconds
    stdout/stderr — captured streams
    total_tests / passed_tests / failed_tests / skipped_tests — optional counts
    test_details  — optional per-test name + status

Once published a record is never rewritten.
"""
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, field_validator

from isobuild.core.constants import TEST_STATUSES


class TestDetail(BaseModel):
    __test__ = False  # not a pytest class

    name: str
    status: str


class ResultRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    suite_id: str
    step_index: int = -1
    container_id: str = ""
    test_status: str
    exit_code: int
    duration: float = 0.0
    stdout: str = ""
    stderr: str = ""

    total_tests: Optional[int] = None
    passed_tests: Optional[int] = None
    failed_tests: Optional[int] = None
    skipped_tests: Optional[int] = None
    test_details: List[TestDetail] = []

    @field_validator("test_status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in TEST_STATUSES:
            raise ValueError(f"test_status must be one of {TEST_STATUSES}, got {v!r}")
        return v

    @field_validator("duration")
    @classmethod
    def non_negative_duration(cls, v: float) -> float:
        return max(0.0, v)

    @property
    def passed(self) -> bool:
        return self.exit_code == 0
