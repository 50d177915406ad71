"""Convergence Run — one execution of the inner generate/evaluate/learn loop."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from twoloop_kernel.models.evaluation import EvaluationResult
from twoloop_kernel.models.task import EscalationReason, TaskInput, TaskType


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    CONVERGED = "CONVERGED"
    MAX_ITERATIONS_REACHED = "MAX_ITERATIONS_REACHED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


TERMINAL_RUN_STATUSES = (
    RunStatus.CONVERGED,
    RunStatus.MAX_ITERATIONS_REACHED,
    RunStatus.ERROR,
    RunStatus.CANCELLED,
)


class UpdateOperation(str, Enum):
    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"


class InsightType(str, Enum):
    PATTERN = "pattern"
    GAP = "gap"
    CONFLICT = "conflict"
    IMPROVEMENT = "improvement"


class RunConfig(BaseModel):
    """Loop configuration for one Run."""

    max_iterations: int = Field(default=5, ge=1)
    convergence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=300, ge=0)
    dimensions: List[str] = ["quality", "relevance", "compliance", "brand_voice"]
    # Stricter bar for trusting output without a human; independent of
    # convergence_threshold.
    escalation_confidence_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    learn_regenerate_threshold: int = Field(default=2, ge=0)
    persist_learnings: bool = True


class RunContext(BaseModel):
    tenant_id: str
    task_type: TaskType
    input: TaskInput = TaskInput()
    config: RunConfig = RunConfig()


class GeneratedOutput(BaseModel):
    content: Dict[str, Any]
    tokens_used: int = 0
    latency_ms: float = 0.0
    model_id: str = "unknown"
    generated_at: datetime


class GuidelinesUpdate(BaseModel):
    """A proposed edit to the working Guidelines."""

    path: str                               # e.g. "templates[0].body"
    operation: UpdateOperation
    value: Any = None
    rationale: str = ""


class LearningInsight(BaseModel):
    type: InsightType
    description: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class IterationLearning(BaseModel):
    insights: List[LearningInsight] = []
    proposed_updates: List[GuidelinesUpdate] = []
    reasoning: str = ""
    strategy: str = "patch"                 # "patch" | "regenerate"
    rejected_updates: List[GuidelinesUpdate] = []


class Iteration(BaseModel):
    number: int = Field(ge=1)
    output: GeneratedOutput
    policy_snapshot: Dict[str, Any]         # Guidelines content the output was generated from
    evaluation: EvaluationResult
    learning: Optional[IterationLearning] = None
    duration_ms: float = 0.0


class RunError(BaseModel):
    code: str                               # "TIMEOUT" | "ORACLE_ERROR" | "EXECUTION_ERROR"
    message: str
    recoverable: bool


class ConvergenceRun(BaseModel):
    id: str
    tenant_id: str
    task_type: TaskType
    guidelines_version: Optional[int] = None
    criteria_version: Optional[int] = None
    iterations: List[Iteration] = []
    converged: bool = False
    final_score: Optional[float] = None
    final_output: Optional[GeneratedOutput] = None
    guidelines_updates: List[GuidelinesUpdate] = []
    draft_version_id: Optional[str] = None  # Guidelines draft persisted after the Run
    status: RunStatus = RunStatus.RUNNING
    error: Optional[RunError] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def total_iterations(self) -> int:
        return len(self.iterations)

    @property
    def total_tokens_used(self) -> int:
        return sum(i.output.tokens_used for i in self.iterations)


class EngineEscalation(BaseModel):
    """The engine's own view of whether the Run's output needs a human."""

    required: bool = False
    reasons: List[EscalationReason] = []
    messages: List[str] = []

    @property
    def reason(self) -> Optional[EscalationReason]:
        return self.reasons[0] if self.reasons else None


class RunResult(BaseModel):
    run: ConvergenceRun
    escalation: EngineEscalation

    @property
    def output(self) -> Optional[GeneratedOutput]:
        return self.run.final_output
