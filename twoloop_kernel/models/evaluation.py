"""Evaluation results produced by the Rubric Evaluator."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class DimensionScore(BaseModel):
    dimension_id: str
    score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class PatternMatch(BaseModel):
    pattern_id: str
    name: str
    severity: float = Field(ge=0.0, le=1.0)
    evidence: str = ""                      # The matched text


class EvaluationResult(BaseModel):
    overall_score: float = Field(ge=0.0, le=1.0)
    dimension_scores: List[DimensionScore] = []
    passed: bool
    passing_threshold: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""
    failures: List[str] = []
    pattern_matches: List[PatternMatch] = []
    rubric_id: Optional[str] = None
    evaluated_at: datetime

    def dimension_map(self) -> Dict[str, float]:
        return {d.dimension_id: d.score for d in self.dimension_scores}


class QuickCheckResult(BaseModel):
    passed: bool
    reason: Optional[str] = None


class DimensionComparison(BaseModel):
    dimension_id: str
    agent_score: Optional[float] = None
    human_score: Optional[float] = None
    difference: float = 0.0                 # agent - human


class CalibrationResult(BaseModel):
    """Agent vs. human scoring for rubric-drift detection. Never affects routing."""

    agent_evaluation: EvaluationResult
    human_evaluation: EvaluationResult
    overall_difference: float
    dimension_comparisons: List[DimensionComparison] = []
    is_aligned: bool
    alignment_score: float
    recommendation: str


class EvaluatorConfig(BaseModel):
    grading_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    quick_check_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    critical_severity: float = Field(default=0.8, ge=0.0, le=1.0)
    severity_discount: float = Field(default=0.2, ge=0.0, le=1.0)
    alignment_tolerance: float = Field(default=0.15, ge=0.0, le=1.0)
    dimension_drift_tolerance: float = Field(default=0.2, ge=0.0, le=1.0)
