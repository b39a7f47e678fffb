"""
Execution Plan Model
====================
Ordered execution groups computed once per run by the dependency scheduler.

    ExecutionGroup — step indices whose prerequisites lie in earlier groups
    ExecutionPlan  — groups in run order plus the flattened execution order

Groups run sequentially; steps inside one group run concurrently.
"""
from typing import List
from pydantic import BaseModel


class ExecutionGroup(BaseModel):
    index: int
    steps: List[int] = []


class ExecutionPlan(BaseModel):
    groups: List[ExecutionGroup] = []

    @property
    def execution_order(self) -> List[int]:
        return [step for group in self.groups for step in group.steps]

    def group_of(self, step_index: int) -> int:
        """Return the group index holding ``step_index`` (-1 if absent)."""
        for group in self.groups:
            if step_index in group.steps:
                return group.index
        return -1
