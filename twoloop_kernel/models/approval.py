"""Approval Queue views, decisions and statistics."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from twoloop_kernel.models.task import EscalationReason, Priority, Task, TaskType


class DecisionType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"


class QueuedTask(BaseModel):
    """A PENDING_APPROVAL task as an operator sees it."""

    task: Task
    wait_minutes: float
    run: Optional[Dict[str, Any]] = None    # Convergence Run record, when requested


class ApprovalDecision(BaseModel):
    task_id: str
    decision: DecisionType
    teleoperator_id: str
    edited_content: Optional[Dict[str, Any]] = None
    rejection_reason: Optional[str] = None
    feedback: Optional[str] = None
    suggest_guidelines_update: bool = False
    suggest_criteria_update: bool = False


class QueueFilter(BaseModel):
    tenant_id: Optional[str] = None
    types: List[TaskType] = []
    priorities: List[Priority] = []
    escalation_reasons: List[EscalationReason] = []
    assigned_to: Optional[str] = None
    unassigned_only: bool = False
    limit: int = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)


class QueueStats(BaseModel):
    total_pending: int = 0
    by_priority: Dict[str, int] = {}
    by_type: Dict[str, int] = {}
    by_escalation_reason: Dict[str, int] = {}
    unassigned: int = 0
    avg_wait_minutes: float = 0.0
    oldest_wait_minutes: float = 0.0
    computed_at: datetime


class BatchFailure(BaseModel):
    task_id: str
    error: str


class BatchResult(BaseModel):
    succeeded: List[str] = []
    failed: List[BatchFailure] = []
