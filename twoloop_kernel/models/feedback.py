"""Human feedback routed toward Guidelines or Criteria changes."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel

from twoloop_kernel.models.policy import PolicyKind


class Job(BaseModel):
    """A unit of deferred work handed to a background consumer."""

    id: str
    queue: str                              # "task-execution" | "notifications" | "feedback"
    name: str
    payload: Dict[str, Any] = {}
    created_at: datetime


class FeedbackProposal(BaseModel):
    """Operator feedback awaiting a human decision on a policy change."""

    id: str
    tenant_id: str
    target: PolicyKind
    task_id: str
    feedback: str
    submitted_by: str
    status: str = "pending_review"          # "pending_review" | "approved" | "rejected"
    draft_version_id: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
