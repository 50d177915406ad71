"""Policy documents — Guidelines (how to act) and Criteria (what good looks like)."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class PolicyKind(str, Enum):
    GUIDELINES = "guidelines"
    CRITERIA = "criteria"


class VersionStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    REJECTED = "REJECTED"


class Author(str, Enum):
    AGENT = "AGENT"
    TELEOPERATOR = "TELEOPERATOR"
    SYSTEM = "SYSTEM"


# --- Guidelines content ---

class WorkflowStage(BaseModel):
    id: str
    name: str
    action: str                             # e.g. "SEND_EMAIL", "WAIT", "BRANCH"
    config: Dict[str, Any] = {}
    next_stage_id: Optional[str] = None


class WorkflowGuideline(BaseModel):
    id: str
    name: str
    domain: str                             # "sourcing" | "outreach" | "screening" | ...
    description: str = ""
    stages: List[WorkflowStage] = []


class TemplateGuideline(BaseModel):
    id: str
    name: str
    type: str                               # "initial_outreach" | "follow_up" | ...
    channel: str = "email"
    subject: Optional[str] = None
    body: str
    variables: List[str] = []
    usage_conditions: List[str] = []


class DecisionNode(BaseModel):
    id: str
    type: str                               # "condition" | "action"
    condition: Optional[str] = None
    action: Optional[str] = None
    children: Dict[str, str] = {}           # branch label -> node id


class DecisionTree(BaseModel):
    id: str
    name: str
    domain: str
    root_node_id: str
    nodes: Dict[str, DecisionNode] = {}


class GuidelineConstraint(BaseModel):
    id: str
    name: str
    type: str                               # "rate_limit" | "time_window" | "content_filter" | "custom"
    config: Dict[str, Any] = {}
    active: bool = True


class GuidelinesContent(BaseModel):
    workflows: List[WorkflowGuideline] = []
    templates: List[TemplateGuideline] = []
    decision_trees: List[DecisionTree] = []
    constraints: List[GuidelineConstraint] = []


# --- Criteria content ---

class FailureSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> float:
        return _SEVERITY_WEIGHT[self]


_SEVERITY_WEIGHT = {
    FailureSeverity.LOW: 0.25,
    FailureSeverity.MEDIUM: 0.5,
    FailureSeverity.HIGH: 0.75,
    FailureSeverity.CRITICAL: 1.0,
}


class QualityStandard(BaseModel):
    id: str
    name: str
    domain: str
    description: str = ""
    weight: float = Field(default=1.0, ge=0.0)


class RubricDimension(BaseModel):
    id: str
    name: str
    weight: float = Field(default=1.0, ge=0.0)
    scoring_guide: str = ""


class EvaluationRubric(BaseModel):
    id: str
    name: str
    domain: str
    dimensions: List[RubricDimension] = []


class SuccessMetric(BaseModel):
    id: str
    name: str
    domain: str
    target: float
    unit: str = ""


class FailurePattern(BaseModel):
    id: str
    name: str
    domain: str
    description: str = ""
    severity: FailureSeverity = FailureSeverity.MEDIUM
    patterns: List[str] = []                # Regexes matched against the output text
    case_sensitive: bool = False


class CriteriaContent(BaseModel):
    quality_standards: List[QualityStandard] = []
    evaluation_rubrics: List[EvaluationRubric] = []
    success_metrics: List[SuccessMetric] = []
    failure_patterns: List[FailurePattern] = []


PolicyContent = Union[GuidelinesContent, CriteriaContent]


class PolicyVersion(BaseModel):
    """One immutable version of a tenant's Guidelines or Criteria."""

    id: str
    tenant_id: str
    kind: PolicyKind
    version: int = Field(ge=1)
    status: VersionStatus = VersionStatus.DRAFT
    content: Dict[str, Any]                 # Serialized GuidelinesContent / CriteriaContent
    created_by: Author
    changelog: str = ""
    parent_version: Optional[int] = None
    created_at: datetime
    activated_at: Optional[datetime] = None
    activated_by: Optional[Author] = None
    rejection_reason: Optional[str] = None

    def guidelines(self) -> GuidelinesContent:
        return GuidelinesContent.model_validate(self.content)

    def criteria(self) -> CriteriaContent:
        return CriteriaContent.model_validate(self.content)


class SectionDiff(BaseModel):
    added: List[str] = []
    modified: List[str] = []
    removed: List[str] = []


class PolicyDiff(BaseModel):
    """Result of comparing two versions of the same policy."""

    kind: PolicyKind
    from_version: int
    to_version: int
    sections: Dict[str, SectionDiff] = {}
    summary: str = "No changes"


class ValidationReport(BaseModel):
    valid: bool = True
    errors: List[str] = []
    warnings: List[str] = []
