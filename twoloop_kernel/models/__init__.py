"""Two-Loop kernel data models."""

from twoloop_kernel.models.approval import (
    ApprovalDecision,
    BatchFailure,
    BatchResult,
    DecisionType,
    QueuedTask,
    QueueFilter,
    QueueStats,
)
from twoloop_kernel.models.convergence import (
    ConvergenceRun,
    EngineEscalation,
    GeneratedOutput,
    GuidelinesUpdate,
    InsightType,
    Iteration,
    IterationLearning,
    LearningInsight,
    RunConfig,
    RunContext,
    RunError,
    RunResult,
    RunStatus,
    UpdateOperation,
)
from twoloop_kernel.models.escalation import (
    CandidateFlagCondition,
    ConfidenceCondition,
    ConfidenceOperator,
    ContentCondition,
    ConversationIntentCondition,
    CustomCondition,
    EscalationContext,
    EscalationDecision,
    EscalationTrigger,
    TaskTypeCondition,
    TriggerActivation,
)
from twoloop_kernel.models.evaluation import (
    CalibrationResult,
    DimensionComparison,
    DimensionScore,
    EvaluationResult,
    EvaluatorConfig,
    PatternMatch,
    QuickCheckResult,
)
from twoloop_kernel.models.feedback import FeedbackProposal, Job
from twoloop_kernel.models.orchestration import (
    BatchItemFailure,
    BatchProcessResult,
    OrchestratorConfig,
    TaskRequest,
    TaskResult,
)
from twoloop_kernel.models.policy import (
    Author,
    CriteriaContent,
    DecisionNode,
    DecisionTree,
    EvaluationRubric,
    FailurePattern,
    FailureSeverity,
    GuidelineConstraint,
    GuidelinesContent,
    PolicyDiff,
    PolicyKind,
    PolicyVersion,
    QualityStandard,
    RubricDimension,
    SectionDiff,
    SuccessMetric,
    TemplateGuideline,
    ValidationReport,
    VersionStatus,
    WorkflowGuideline,
    WorkflowStage,
)
from twoloop_kernel.models.task import (
    EscalationReason,
    InputConstraint,
    Priority,
    SideEffect,
    Task,
    TaskInput,
    TaskStatus,
    TaskType,
)
from twoloop_kernel.models.tenant import (
    ActionOverride,
    AutoApprovalRule,
    AutonomyConfig,
    AutonomyLevel,
    TenantConfig,
)

__all__ = [
    "ActionOverride",
    "ApprovalDecision",
    "Author",
    "AutoApprovalRule",
    "AutonomyConfig",
    "AutonomyLevel",
    "BatchFailure",
    "BatchItemFailure",
    "BatchProcessResult",
    "BatchResult",
    "CalibrationResult",
    "CandidateFlagCondition",
    "ConfidenceCondition",
    "ConfidenceOperator",
    "ContentCondition",
    "ConversationIntentCondition",
    "ConvergenceRun",
    "CriteriaContent",
    "CustomCondition",
    "DecisionNode",
    "DecisionTree",
    "DecisionType",
    "DimensionComparison",
    "DimensionScore",
    "EngineEscalation",
    "EscalationContext",
    "EscalationDecision",
    "EscalationReason",
    "EscalationTrigger",
    "EvaluationResult",
    "EvaluationRubric",
    "EvaluatorConfig",
    "FailurePattern",
    "FailureSeverity",
    "FeedbackProposal",
    "GeneratedOutput",
    "GuidelineConstraint",
    "GuidelinesContent",
    "GuidelinesUpdate",
    "InputConstraint",
    "InsightType",
    "Iteration",
    "IterationLearning",
    "Job",
    "LearningInsight",
    "OrchestratorConfig",
    "PatternMatch",
    "PolicyDiff",
    "PolicyKind",
    "PolicyVersion",
    "Priority",
    "QualityStandard",
    "QueueFilter",
    "QueueStats",
    "QueuedTask",
    "QuickCheckResult",
    "RubricDimension",
    "RunConfig",
    "RunContext",
    "RunError",
    "RunResult",
    "RunStatus",
    "SectionDiff",
    "SideEffect",
    "SuccessMetric",
    "Task",
    "TaskInput",
    "TaskRequest",
    "TaskResult",
    "TaskStatus",
    "TaskType",
    "TaskTypeCondition",
    "TemplateGuideline",
    "TenantConfig",
    "TriggerActivation",
    "UpdateOperation",
    "ValidationReport",
    "VersionStatus",
    "WorkflowGuideline",
    "WorkflowStage",
]
