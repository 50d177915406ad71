"""Escalation triggers and decisions."""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from twoloop_kernel.models.task import EscalationReason, Priority, TaskType
from twoloop_kernel.models.tenant import TenantConfig


class TaskTypeCondition(BaseModel):
    kind: Literal["task_type"] = "task_type"
    task_types: List[TaskType]


class ContentCondition(BaseModel):
    kind: Literal["content"] = "content"
    patterns: List[str]                     # Regexes
    case_sensitive: bool = False


class ConfidenceOperator(str, Enum):
    BELOW = "below"
    ABOVE = "above"


class ConfidenceCondition(BaseModel):
    kind: Literal["confidence"] = "confidence"
    threshold: float = Field(ge=0.0, le=1.0)
    operator: ConfidenceOperator = ConfidenceOperator.BELOW


class CandidateFlagCondition(BaseModel):
    kind: Literal["candidate_flag"] = "candidate_flag"
    flags: List[str]


class ConversationIntentCondition(BaseModel):
    kind: Literal["conversation_intent"] = "conversation_intent"
    intents: List[str]


class CustomCondition(BaseModel):
    kind: Literal["custom"] = "custom"
    evaluator: str                          # Name in the custom predicate table
    config: Dict[str, Any] = {}


TriggerCondition = Union[
    TaskTypeCondition,
    ContentCondition,
    ConfidenceCondition,
    CandidateFlagCondition,
    ConversationIntentCondition,
    CustomCondition,
]


class TriggerActivation(BaseModel):
    """When a trigger is live."""

    always: bool = True
    schedule: Optional[str] = None          # Cron expression


class EscalationTrigger(BaseModel):
    id: str
    name: str
    description: str = ""
    condition: TriggerCondition = Field(discriminator="kind")
    reason: EscalationReason
    priority: Priority = Priority.MEDIUM
    channels: List[str] = ["dashboard"]
    enabled: bool = True
    activation: TriggerActivation = TriggerActivation()


class EscalationContext(BaseModel):
    task_type: TaskType
    tenant_config: TenantConfig
    content: Optional[str] = None           # Flattened generated output
    confidence_score: Optional[float] = None
    candidate_flags: List[str] = []
    conversation_intent: Optional[str] = None
    custom: Dict[str, Any] = {}


class EscalationDecision(BaseModel):
    should_escalate: bool
    reason: Optional[EscalationReason] = None
    priority: Optional[Priority] = None
    triggered_rules: List[str] = []         # Trigger ids
    channels: List[str] = []
    message: Optional[str] = None
