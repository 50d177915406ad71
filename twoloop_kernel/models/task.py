"""Task — a unit of requested recruiting work and its state machine."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TaskType(str, Enum):
    SEND_EMAIL = "SEND_EMAIL"
    SEND_LINKEDIN_MESSAGE = "SEND_LINKEDIN_MESSAGE"
    SEND_FOLLOW_UP = "SEND_FOLLOW_UP"
    SEARCH_CANDIDATES = "SEARCH_CANDIDATES"
    IMPORT_CANDIDATE = "IMPORT_CANDIDATE"
    SCREEN_RESUME = "SCREEN_RESUME"
    GENERATE_ASSESSMENT = "GENERATE_ASSESSMENT"
    SCHEDULE_INTERVIEW = "SCHEDULE_INTERVIEW"
    SEND_REMINDER = "SEND_REMINDER"
    UPDATE_ATS_STATUS = "UPDATE_ATS_STATUS"
    SYNC_CANDIDATE = "SYNC_CANDIDATE"
    PREPARE_OFFER = "PREPARE_OFFER"
    SEND_OFFER = "SEND_OFFER"
    UPDATE_GUIDELINES = "UPDATE_GUIDELINES"
    GENERATE_REPORT = "GENERATE_REPORT"


class TaskStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class EscalationReason(str, Enum):
    SENSITIVE_COMMUNICATION = "SENSITIVE_COMMUNICATION"
    BUDGET_DISCUSSION = "BUDGET_DISCUSSION"
    OFFER_NEGOTIATION = "OFFER_NEGOTIATION"
    CANDIDATE_COMPLAINT = "CANDIDATE_COMPLAINT"
    EDGE_CASE = "EDGE_CASE"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    POLICY_VIOLATION_RISK = "POLICY_VIOLATION_RISK"
    FIRST_CONTACT_VIP = "FIRST_CONTACT_VIP"
    MANUAL_REVIEW_REQUESTED = "MANUAL_REVIEW_REQUESTED"


class SideEffect(str, Enum):
    """How far a task type reaches outside the agent when executed."""
    NONE = "none"            # Sandboxed, produces an artifact only
    INTERNAL = "internal"    # Writes to the tenant's own systems (ATS, CRM)
    EXTERNAL = "external"    # Candidate-facing: messages, invites and offers


# Statuses a task may move to from each status.
ALLOWED_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.DRAFT: [
        TaskStatus.COMPLETED,
        TaskStatus.PENDING_APPROVAL,
        TaskStatus.APPROVED,
    ],
    TaskStatus.PENDING_APPROVAL: [
        TaskStatus.APPROVED,
        TaskStatus.REJECTED,
        TaskStatus.EXPIRED,
    ],
    TaskStatus.APPROVED: [TaskStatus.EXECUTING, TaskStatus.CANCELLED],
    TaskStatus.EXECUTING: [TaskStatus.COMPLETED, TaskStatus.FAILED],
    TaskStatus.COMPLETED: [],
    TaskStatus.FAILED: [],
    TaskStatus.REJECTED: [],
    TaskStatus.CANCELLED: [],
    TaskStatus.EXPIRED: [],
}


class InputConstraint(BaseModel):
    """A per-task constraint supplied with the request."""

    type: str                               # "rate_limit" | "time_window" | "content_filter" | "custom"
    config: Dict[str, Any] = {}


class TaskInput(BaseModel):
    requisition_id: Optional[str] = None
    candidate_id: Optional[str] = None
    conversation_id: Optional[str] = None
    data: Dict[str, Any] = {}
    constraints: List[InputConstraint] = []


class Task(BaseModel):
    """A unit of requested work, tracked through its lifecycle."""

    id: str
    tenant_id: str
    type: TaskType
    status: TaskStatus = TaskStatus.DRAFT
    priority: Priority = Priority.MEDIUM
    escalation_reason: Optional[EscalationReason] = None
    input: TaskInput = TaskInput()
    payload: Dict[str, Any] = {}            # Generated content
    iteration_count: int = 0
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    convergence_run_id: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
