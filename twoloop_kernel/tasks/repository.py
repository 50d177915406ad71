"""
Task Repository — tasks and their status transitions.

Updated by: Orchestrator + Approval Queue
Queried by: Approval Queue + execution worker + API
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from twoloop_kernel.errors import NotFoundError, ValidationError
from twoloop_kernel.models.task import ALLOWED_TRANSITIONS, Task, TaskStatus


class TaskRepository:
    """
    In-memory task store.
    Production would use a persistent database. Reads return copies so
    callers cannot change stored state except through this class.
    """

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def create(self, task: Task) -> Task:
        async with self._lock:
            if task.id in self._tasks:
                raise ValidationError(f"Task {task.id} already exists")
            self._tasks[task.id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    async def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task.model_copy(deep=True)

    async def find(self, predicate: Callable[[Task], bool]) -> List[Task]:
        return [t.model_copy(deep=True) for t in self._tasks.values() if predicate(t)]

    async def list_by_status(
        self, status: TaskStatus, tenant_id: Optional[str] = None
    ) -> List[Task]:
        return await self.find(
            lambda t: t.status == status and (tenant_id is None or t.tenant_id == tenant_id)
        )

    async def update(
        self,
        task_id: str,
        expected_status: Optional[TaskStatus] = None,
        **fields: Any,
    ) -> Task:
        """Change fields on a task, optionally only if it is in ``expected_status``."""
        async with self._lock:
            task = self._require(task_id)
            if expected_status is not None and task.status != expected_status:
                raise ValidationError(
                    f"Task {task_id} is {task.status.value}, expected {expected_status.value}"
                )
            self._apply(task, fields)
            return task.model_copy(deep=True)

    async def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        expected_status: Optional[TaskStatus] = None,
        **fields: Any,
    ) -> Task:
        """
        Move a task to ``new_status``, enforcing the task state machine.

        Extra fields are written in the same step. Nothing changes if the
        transition is not allowed.
        """
        async with self._lock:
            task = self._require(task_id)
            if expected_status is not None and task.status != expected_status:
                raise ValidationError(
                    f"Task {task_id} is {task.status.value}, expected {expected_status.value}"
                )
            if new_status not in ALLOWED_TRANSITIONS[task.status]:
                raise ValidationError(
                    f"Task {task_id} cannot move from {task.status.value} to {new_status.value}"
                )
            fields["status"] = new_status
            self._apply(task, fields)
            return task.model_copy(deep=True)

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def _apply(self, task: Task, fields: Dict[str, Any]) -> None:
        for name, value in fields.items():
            if name not in Task.model_fields:
                raise ValidationError(f"Unknown task field '{name}'")
            setattr(task, name, value)
        task.updated_at = datetime.utcnow()

    def count(self) -> int:
        return len(self._tasks)
