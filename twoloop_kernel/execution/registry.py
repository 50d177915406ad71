"""
Executor Registry — per-task-type side-effecting executors.

Behavioral Contract:
- Called only by the orchestrator, only for APPROVED tasks
- Every dispatch returns a result dict with ``success`` and ``duration``;
  an executor that raises produces ``success: False`` with the error text
- No retries at this layer
"""

import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from twoloop_kernel.models.task import Task, TaskType

Executor = Callable[[Task], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class ExecutorRegistry:
    """
    Maps task types to executors. The defaults are mock integrations;
    production registers ATS, email and calendar clients at startup.
    """

    def __init__(self, register_defaults: bool = True):
        self._executors: Dict[TaskType, Executor] = {}
        if register_defaults:
            self._register_default_executors()

    def _register_default_executors(self) -> None:
        self._executors[TaskType.SEND_EMAIL] = self._mock_send_email
        self._executors[TaskType.SEND_LINKEDIN_MESSAGE] = self._mock_send_linkedin_message
        self._executors[TaskType.SCHEDULE_INTERVIEW] = self._mock_schedule_interview
        self._executors[TaskType.UPDATE_ATS_STATUS] = self._mock_update_ats_status
        self._executors[TaskType.SYNC_CANDIDATE] = self._mock_sync_candidate

    def register_executor(self, task_type: TaskType, executor: Executor) -> None:
        """Register (or replace) the executor for a task type."""
        self._executors[task_type] = executor

    def get(self, task_type: TaskType) -> Optional[Executor]:
        return self._executors.get(task_type)

    async def dispatch(self, task: Task) -> Dict[str, Any]:
        """Run the executor for ``task`` and normalize its result."""
        executor = self._executors.get(task.type)
        if executor is None:
            return {
                "success": True,
                "task_type": task.type.value,
                "message": f"No executor registered for {task.type.value}; nothing to deliver",
                "duration": 0.0,
            }

        start = time.monotonic()
        try:
            outcome = executor(task)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            return {
                "success": False,
                "task_type": task.type.value,
                "error": str(e),
                "duration": round(time.monotonic() - start, 3),
            }

        result = dict(outcome) if isinstance(outcome, dict) else {"data": outcome}
        result.setdefault("success", True)
        result["task_type"] = task.type.value
        result["duration"] = round(time.monotonic() - start, 3)
        return result

    # --- Mock Executors ---

    async def _mock_send_email(self, task: Task) -> dict:
        return {
            "success": True,
            "message_id": f"email_{task.id}",
            "subject": task.payload.get("subject"),
        }

    async def _mock_send_linkedin_message(self, task: Task) -> dict:
        return {"success": True, "message_id": f"linkedin_{task.id}"}

    async def _mock_schedule_interview(self, task: Task) -> dict:
        return {
            "success": True,
            "event_id": f"event_{task.id}",
            "slot": task.payload.get("slot"),
        }

    async def _mock_update_ats_status(self, task: Task) -> dict:
        return {
            "success": True,
            "candidate_id": task.input.candidate_id,
            "status": task.payload.get("status"),
        }

    async def _mock_sync_candidate(self, task: Task) -> dict:
        return {"success": True, "candidate_id": task.input.candidate_id, "synced": True}
