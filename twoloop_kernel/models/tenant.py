"""Tenant configuration — autonomy settings consulted by routing and escalation."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from twoloop_kernel.models.task import TaskType


class AutonomyLevel(str, Enum):
    CONSERVATIVE = "conservative"   # Every task goes to a human
    MODERATE = "moderate"
    HIGH = "high"


class ActionOverride(BaseModel):
    task_type: TaskType
    requires_approval: bool = True


class AutoApprovalRule(BaseModel):
    """Task types a tenant allows to be approved without a human."""

    id: str
    name: str
    task_types: List[TaskType] = []         # Empty = any task type
    min_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def matches(self, task_type: TaskType, score: float) -> bool:
        if self.task_types and task_type not in self.task_types:
            return False
        if self.min_score is not None and score < self.min_score:
            return False
        return True


class AutonomyConfig(BaseModel):
    level: AutonomyLevel = AutonomyLevel.MODERATE
    action_overrides: List[ActionOverride] = []
    auto_approval_rules: List[AutoApprovalRule] = []
    auto_approval_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_daily_auto_approvals: int = Field(default=50, ge=0)
    # Skip the rule list entirely. None keeps the legacy behaviour of
    # bypassing only for the HIGH autonomy level.
    bypass_auto_approval_rules: Optional[bool] = None

    @property
    def rules_bypassed(self) -> bool:
        if self.bypass_auto_approval_rules is not None:
            return self.bypass_auto_approval_rules
        return self.level == AutonomyLevel.HIGH

    def override_for(self, task_type: TaskType) -> Optional[ActionOverride]:
        for override in self.action_overrides:
            if override.task_type == task_type:
                return override
        return None


class TenantConfig(BaseModel):
    tenant_id: str
    name: str = ""
    autonomy: AutonomyConfig = AutonomyConfig()
    metadata: Dict[str, str] = {}
