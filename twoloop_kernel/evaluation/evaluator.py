"""
Rubric Evaluator — scores generated output against the tenant's Criteria.

Two stages:
  1. The oracle grades the output as a low-temperature grader constrained
     to the rubric for the task's domain.
  2. A local failure-pattern detector scans the same output; every match
     discounts the overall score by ``1 - severity * 0.2``.

``quick_check`` runs the detector first and only then a lightweight grading
call. ``calibrate`` diffs an automatic evaluation against a human one to
surface rubric drift; it never influences task routing.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from twoloop_kernel.log import get_logger
from twoloop_kernel.models.convergence import GeneratedOutput
from twoloop_kernel.models.evaluation import (
    CalibrationResult,
    DimensionComparison,
    DimensionScore,
    EvaluationResult,
    EvaluatorConfig,
    PatternMatch,
    QuickCheckResult,
)
from twoloop_kernel.models.policy import CriteriaContent, FailurePattern
from twoloop_kernel.models.task import TaskType
from twoloop_kernel.oracle.base import GenerationOracle, GradingResponse, parse_response
from twoloop_kernel.tasks.registry import TaskTypeRegistry

logger = get_logger("evaluation")

GENERAL_DOMAIN = "general"


def output_text(output: Union[GeneratedOutput, Dict[str, Any]]) -> str:
    """Flatten generated content into one string for pattern matching."""
    content = output.content if isinstance(output, GeneratedOutput) else output
    parts: List[str] = []

    def walk(value: Any) -> None:
        if isinstance(value, str):
            parts.append(value)
        elif isinstance(value, dict):
            for v in value.values():
                walk(v)
        elif isinstance(value, (list, tuple)):
            for v in value:
                walk(v)

    walk(content)
    return "\n".join(parts)


def detect_failure_patterns(text: str, patterns: List[FailurePattern]) -> List[PatternMatch]:
    """Regex detection. One match per failure pattern at most."""
    matches: List[PatternMatch] = []
    for pattern in patterns:
        flags = 0 if pattern.case_sensitive else re.IGNORECASE
        for expression in pattern.patterns:
            try:
                found = re.search(expression, text, flags)
            except re.error:
                logger.warning(
                    "invalid failure pattern expression",
                    extra={"structured": {"pattern_id": pattern.id, "expression": expression}},
                )
                continue
            if found:
                matches.append(PatternMatch(
                    pattern_id=pattern.id,
                    name=pattern.name,
                    severity=pattern.severity.weight,
                    evidence=found.group(0),
                ))
                break
    return matches


class RubricEvaluator:
    """Scores outputs. Reads Criteria; never writes them."""

    def __init__(
        self,
        oracle: GenerationOracle,
        config: Optional[EvaluatorConfig] = None,
        task_types: Optional[TaskTypeRegistry] = None,
    ):
        self.oracle = oracle
        self.config = config or EvaluatorConfig()
        self.task_types = task_types or TaskTypeRegistry.default()

    def _relevant(self, criteria: CriteriaContent, task_type: Optional[TaskType]) -> Dict[str, Any]:
        domain = self.task_types.domain_of(task_type) if task_type else GENERAL_DOMAIN
        wanted = (domain, GENERAL_DOMAIN)

        rubrics = [r for r in criteria.evaluation_rubrics if r.domain in wanted]
        if not rubrics and criteria.evaluation_rubrics:
            rubrics = criteria.evaluation_rubrics[:1]

        return {
            "domain": domain,
            "rubric": rubrics[0] if rubrics else None,
            "standards": [s for s in criteria.quality_standards if s.domain in wanted],
            "patterns": [p for p in criteria.failure_patterns if p.domain in wanted],
        }

    def _rubric_payload(self, relevant: Dict[str, Any], task_type: Optional[TaskType]) -> Dict[str, Any]:
        rubric = relevant["rubric"]
        return {
            "task_type": task_type.value if task_type else None,
            "domain": relevant["domain"],
            "rubric": rubric.model_dump(mode="json") if rubric else None,
            "quality_standards": [s.model_dump(mode="json") for s in relevant["standards"]],
            "known_failure_patterns": [
                {"name": p.name, "description": p.description, "severity": p.severity.value}
                for p in relevant["patterns"]
            ],
        }

    async def evaluate(
        self,
        output: Union[GeneratedOutput, Dict[str, Any]],
        criteria: CriteriaContent,
        dimensions: List[str],
        passing_threshold: float,
        task_type: Optional[TaskType] = None,
    ) -> EvaluationResult:
        """Grade ``output`` and apply failure-pattern discounts."""
        content = output.content if isinstance(output, GeneratedOutput) else output
        relevant = self._relevant(criteria, task_type)

        # 1. Primary grading call
        raw = await self.oracle.evaluate(
            content,
            self._rubric_payload(relevant, task_type),
            dimensions,
            temperature=self.config.grading_temperature,
        )
        grading = parse_response(GradingResponse, raw)

        dimension_scores = [
            DimensionScore(
                dimension_id=d,
                score=min(1.0, max(0.0, grading.dimension_scores.get(d, grading.overall_score))),
            )
            for d in dimensions
        ]

        # 2. Failure-pattern discount
        matches = detect_failure_patterns(output_text(content), relevant["patterns"])
        score = grading.overall_score
        for match in matches:
            score *= 1 - match.severity * self.config.severity_discount
        score = max(0.0, score)

        failures = list(grading.failures)
        failures.extend(f"Failure pattern detected: {m.name}" for m in matches)

        result = EvaluationResult(
            overall_score=score,
            dimension_scores=dimension_scores,
            passed=score >= passing_threshold,
            passing_threshold=passing_threshold,
            confidence=grading.confidence,
            reasoning=grading.reasoning,
            failures=failures,
            pattern_matches=matches,
            rubric_id=relevant["rubric"].id if relevant["rubric"] else None,
            evaluated_at=datetime.utcnow(),
        )
        logger.debug(
            "output evaluated",
            extra={"structured": {
                "task_type": task_type.value if task_type else None,
                "grader_score": grading.overall_score,
                "score": score,
                "pattern_matches": len(matches),
                "passed": result.passed,
            }},
        )
        return result

    async def quick_check(
        self,
        output: Union[GeneratedOutput, Dict[str, Any]],
        criteria: CriteriaContent,
        task_type: Optional[TaskType] = None,
    ) -> QuickCheckResult:
        """Cheap pre-filter: patterns first, then a lightweight grading call."""
        content = output.content if isinstance(output, GeneratedOutput) else output
        relevant = self._relevant(criteria, task_type)

        matches = detect_failure_patterns(output_text(content), relevant["patterns"])
        for match in matches:
            if match.severity >= self.config.critical_severity:
                return QuickCheckResult(
                    passed=False,
                    reason=f"Critical failure pattern detected: {match.name}",
                )

        raw = await self.oracle.evaluate(
            content,
            {
                "mode": "quick_check",
                "task_type": task_type.value if task_type else None,
                "quality_standards": [s.name for s in relevant["standards"]],
            },
            ["overall"],
            temperature=self.config.grading_temperature,
        )
        grading = parse_response(GradingResponse, raw)
        return QuickCheckResult(
            passed=grading.overall_score >= self.config.quick_check_threshold,
            reason=grading.reasoning or None,
        )

    async def calibrate(
        self,
        output: Union[GeneratedOutput, Dict[str, Any]],
        human_evaluation: EvaluationResult,
        criteria: CriteriaContent,
        dimensions: Optional[List[str]] = None,
        task_type: Optional[TaskType] = None,
    ) -> CalibrationResult:
        """Re-run the automatic evaluation and diff it against a human score."""
        if dimensions is None:
            dimensions = [d.dimension_id for d in human_evaluation.dimension_scores]

        agent = await self.evaluate(
            output,
            criteria,
            dimensions,
            passing_threshold=human_evaluation.passing_threshold,
            task_type=task_type,
        )

        agent_dims = agent.dimension_map()
        human_dims = human_evaluation.dimension_map()
        comparisons = []
        for dimension_id in list(dict.fromkeys(list(agent_dims) + list(human_dims))):
            a = agent_dims.get(dimension_id)
            h = human_dims.get(dimension_id)
            comparisons.append(DimensionComparison(
                dimension_id=dimension_id,
                agent_score=a,
                human_score=h,
                difference=(a - h) if a is not None and h is not None else 0.0,
            ))

        overall = abs(agent.overall_score - human_evaluation.overall_score)
        return CalibrationResult(
            agent_evaluation=agent,
            human_evaluation=human_evaluation,
            overall_difference=overall,
            dimension_comparisons=comparisons,
            is_aligned=overall < self.config.alignment_tolerance,
            alignment_score=max(0.0, 1 - overall),
            recommendation=self._recommend(comparisons),
        )

    def _recommend(self, comparisons: List[DimensionComparison]) -> str:
        notes = []
        for c in comparisons:
            if abs(c.difference) <= self.config.dimension_drift_tolerance:
                continue
            if c.difference > 0:
                notes.append(f"Agent over-rates {c.dimension_id} - consider tightening criteria")
            else:
                notes.append(f"Agent under-rates {c.dimension_id} - consider relaxing criteria")
        return "; ".join(notes) if notes else "Evaluation is well-calibrated"
