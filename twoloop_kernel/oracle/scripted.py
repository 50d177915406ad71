"""
Scripted oracle — a deterministic GenerationOracle.

Renders the first matching template from the policy snapshot and grades
outputs from a fixed score script. Used for local runs, demos and tests
where no model backend is available.
"""

import re
from typing import Any, Dict, List, Optional

from twoloop_kernel.errors import OracleError
from twoloop_kernel.models.convergence import (
    GuidelinesUpdate,
    InsightType,
    LearningInsight,
    UpdateOperation,
)
from twoloop_kernel.models.task import TaskType
from twoloop_kernel.oracle.base import GenerationResponse, GradingResponse, LearningResponse

_TEMPLATE_VAR = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class ScriptedOracle:
    """
    Deterministic oracle.

    ``scores`` is consumed one entry per ``evaluate`` call; the last entry
    repeats once the script runs out. ``fail_on`` names a method that
    raises OracleError, for exercising error paths.
    """

    def __init__(
        self,
        scores: Optional[List[float]] = None,
        learnings: Optional[List[LearningResponse]] = None,
        regenerated: Optional[Dict[str, Any]] = None,
        fail_on: Optional[str] = None,
        model_id: str = "scripted-oracle",
    ):
        self.scores = list(scores or [0.9])
        self.learnings = list(learnings or [])
        self.regenerated = regenerated or {}
        self.fail_on = fail_on
        self.model_id = model_id
        self.calls: List[str] = []
        self._evaluations = 0
        self._learning_calls = 0

    def _record(self, method: str) -> None:
        self.calls.append(method)
        if self.fail_on == method:
            raise OracleError(f"Scripted failure in {method}")

    async def generate(
        self,
        task_type: TaskType,
        input_data: Dict[str, Any],
        policy_snapshot: Dict[str, Any],
        constraints: Optional[List[Dict[str, Any]]] = None,
    ) -> GenerationResponse:
        self._record("generate")

        templates = policy_snapshot.get("templates") or []
        template = templates[0] if templates else None
        if template is None:
            body = f"{task_type.value} for {input_data.get('candidate_name', 'candidate')}"
            subject = None
            template_id = None
        else:
            body = _render(template.get("body", ""), input_data)
            subject = _render(template.get("subject") or "", input_data) or None
            template_id = template.get("id")

        content = {
            "subject": subject,
            "body": body,
            "template_id": template_id,
            "constraints_applied": len(policy_snapshot.get("constraints") or []),
        }
        return GenerationResponse(
            content=content,
            tokens_used=len(body.split()),
            latency_ms=1.0,
            model_id=self.model_id,
        )

    async def evaluate(
        self,
        output: Dict[str, Any],
        rubric: Dict[str, Any],
        dimensions: List[str],
        temperature: float = 0.2,
    ) -> GradingResponse:
        self._record("evaluate")

        score = self.scores[min(self._evaluations, len(self.scores) - 1)]
        self._evaluations += 1
        return GradingResponse(
            overall_score=score,
            dimension_scores={d: score for d in dimensions},
            reasoning=f"Scripted score {score:.2f}",
            confidence=0.8,
            failures=[] if score >= 0.8 else ["Below scripted bar"],
        )

    async def extract_learnings(
        self,
        failed_output: Dict[str, Any],
        evaluation: Dict[str, Any],
        context: Dict[str, Any],
    ) -> LearningResponse:
        self._record("extract_learnings")

        index = self._learning_calls
        self._learning_calls += 1
        if self.learnings:
            return self.learnings[min(index, len(self.learnings) - 1)]

        return LearningResponse(
            insights=[
                LearningInsight(
                    type=InsightType.IMPROVEMENT,
                    description="Output scored below threshold; tighten tone guidance",
                    confidence=0.6,
                )
            ],
            proposed_updates=[
                GuidelinesUpdate(
                    path="constraints",
                    operation=UpdateOperation.ADD,
                    value={
                        "id": f"learned_{index + 1}",
                        "name": f"Learned guidance {index + 1}",
                        "type": "content_filter",
                        "config": {"note": "Prefer concise, specific phrasing"},
                    },
                    rationale="Evaluation flagged vague phrasing",
                )
            ],
            reasoning="Scripted learning",
        )

    async def regenerate_guidelines(
        self,
        current_policy: Dict[str, Any],
        learnings: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        self._record("regenerate_guidelines")
        return dict(self.regenerated)


def _render(text: str, data: Dict[str, Any]) -> str:
    return _TEMPLATE_VAR.sub(lambda m: str(data.get(m.group(1), m.group(0))), text)
