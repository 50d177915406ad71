"""
Task Type Registry — static classification of every task type.

Each entry records the task's side-effect class and its domain. The
orchestrator routes on side effects; the evaluator and engine select
rubrics and workflows by domain. Constructed once at startup and passed in
explicitly.
"""

from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from twoloop_kernel.errors import NotFoundError
from twoloop_kernel.models.task import SideEffect, TaskType


class TaskTypeSpec(BaseModel):
    task_type: TaskType
    side_effect: SideEffect
    domain: str
    description: str = ""


DEFAULT_TASK_TYPES: List[TaskTypeSpec] = [
    TaskTypeSpec(task_type=TaskType.SEND_EMAIL, side_effect=SideEffect.EXTERNAL, domain="outreach"),
    TaskTypeSpec(task_type=TaskType.SEND_LINKEDIN_MESSAGE, side_effect=SideEffect.EXTERNAL, domain="outreach"),
    TaskTypeSpec(task_type=TaskType.SEND_FOLLOW_UP, side_effect=SideEffect.EXTERNAL, domain="outreach"),
    TaskTypeSpec(task_type=TaskType.SEND_REMINDER, side_effect=SideEffect.EXTERNAL, domain="scheduling"),
    TaskTypeSpec(task_type=TaskType.SCHEDULE_INTERVIEW, side_effect=SideEffect.EXTERNAL, domain="scheduling"),
    TaskTypeSpec(task_type=TaskType.PREPARE_OFFER, side_effect=SideEffect.EXTERNAL, domain="offer"),
    TaskTypeSpec(task_type=TaskType.SEND_OFFER, side_effect=SideEffect.EXTERNAL, domain="offer"),
    TaskTypeSpec(task_type=TaskType.IMPORT_CANDIDATE, side_effect=SideEffect.INTERNAL, domain="sourcing"),
    TaskTypeSpec(task_type=TaskType.UPDATE_ATS_STATUS, side_effect=SideEffect.INTERNAL, domain="ats"),
    TaskTypeSpec(task_type=TaskType.SYNC_CANDIDATE, side_effect=SideEffect.INTERNAL, domain="ats"),
    TaskTypeSpec(task_type=TaskType.UPDATE_GUIDELINES, side_effect=SideEffect.INTERNAL, domain="policy"),
    TaskTypeSpec(task_type=TaskType.SEARCH_CANDIDATES, side_effect=SideEffect.NONE, domain="sourcing"),
    TaskTypeSpec(task_type=TaskType.SCREEN_RESUME, side_effect=SideEffect.NONE, domain="screening"),
    TaskTypeSpec(task_type=TaskType.GENERATE_ASSESSMENT, side_effect=SideEffect.NONE, domain="screening"),
    TaskTypeSpec(task_type=TaskType.GENERATE_REPORT, side_effect=SideEffect.NONE, domain="reporting"),
]


class TaskTypeRegistry:
    """Lookup of TaskTypeSpec by task type."""

    def __init__(self, specs: Iterable[TaskTypeSpec]):
        self._specs: Dict[TaskType, TaskTypeSpec] = {s.task_type: s for s in specs}

    @classmethod
    def default(cls) -> "TaskTypeRegistry":
        return cls(DEFAULT_TASK_TYPES)

    def register(self, spec: TaskTypeSpec) -> None:
        self._specs[spec.task_type] = spec

    def get(self, task_type: TaskType) -> TaskTypeSpec:
        spec = self._specs.get(task_type)
        if spec is None:
            raise NotFoundError(f"Task type {task_type.value} is not registered")
        return spec

    def find(self, task_type: TaskType) -> Optional[TaskTypeSpec]:
        return self._specs.get(task_type)

    def domain_of(self, task_type: TaskType) -> str:
        spec = self._specs.get(task_type)
        return spec.domain if spec else "general"

    def is_sandboxed(self, task_type: TaskType) -> bool:
        return self.get(task_type).side_effect == SideEffect.NONE

    def is_effectful(self, task_type: TaskType) -> bool:
        """Candidate-facing side effects. Always held for a human."""
        return self.get(task_type).side_effect == SideEffect.EXTERNAL

    def all(self) -> List[TaskTypeSpec]:
        return list(self._specs.values())
