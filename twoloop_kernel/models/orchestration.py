"""Orchestrator requests, results and configuration."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from twoloop_kernel.models.convergence import RunConfig, RunStatus
from twoloop_kernel.models.escalation import EscalationDecision
from twoloop_kernel.models.task import Priority, Task, TaskInput, TaskType


class OrchestratorConfig(BaseModel):
    auto_approval_enabled: bool = True
    auto_approval_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    max_auto_approvals_per_day: int = Field(default=100, ge=0)
    max_concurrent_executions: int = Field(default=10, ge=1)
    approval_expiry_hours: float = Field(default=72, gt=0)
    worker_poll_seconds: float = Field(default=1.0, gt=0)


class TaskRequest(BaseModel):
    tenant_id: str
    type: TaskType
    input: TaskInput = TaskInput()
    priority: Priority = Priority.MEDIUM
    candidate_flags: List[str] = []
    conversation_intent: Optional[str] = None
    run_config: Optional[RunConfig] = None
    metadata: Dict[str, Any] = {}


class TaskResult(BaseModel):
    task: Task
    run_id: str
    run_status: RunStatus
    converged: bool
    final_score: Optional[float] = None
    iterations: int = 0
    escalation: EscalationDecision
    engine_escalation_reasons: List[str] = []
    auto_approved: bool = False


class BatchItemFailure(BaseModel):
    index: int
    task_type: TaskType
    error: str


class BatchProcessResult(BaseModel):
    results: List[TaskResult] = []
    failed: List[BatchItemFailure] = []
