"""
Generation Oracle — the opaque text generator behind generation, grading
and learning.

The kernel depends only on this protocol. Implementations may return either
the response models below or plain dicts of the same shape; callers run
responses through ``parse_response`` before use.
"""

from typing import Any, Dict, List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from twoloop_kernel.errors import OracleError
from twoloop_kernel.models.convergence import GuidelinesUpdate, LearningInsight
from twoloop_kernel.models.task import TaskType


class GenerationResponse(BaseModel):
    content: Dict[str, Any]
    tokens_used: int = 0
    latency_ms: float = 0.0
    model_id: str = "unknown"


class GradingResponse(BaseModel):
    overall_score: float = Field(ge=0.0, le=1.0)
    dimension_scores: Dict[str, float] = {}
    reasoning: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    failures: List[str] = []


class LearningResponse(BaseModel):
    insights: List[LearningInsight] = []
    proposed_updates: List[GuidelinesUpdate] = []
    reasoning: str = ""


class GenerationOracle(Protocol):
    """Protocol for the generation backend — pluggable."""

    async def generate(
        self,
        task_type: TaskType,
        input_data: Dict[str, Any],
        policy_snapshot: Dict[str, Any],
        constraints: Optional[List[Dict[str, Any]]] = None,
    ) -> GenerationResponse: ...

    async def evaluate(
        self,
        output: Dict[str, Any],
        rubric: Dict[str, Any],
        dimensions: List[str],
        temperature: float = 0.2,
    ) -> GradingResponse: ...

    async def extract_learnings(
        self,
        failed_output: Dict[str, Any],
        evaluation: Dict[str, Any],
        context: Dict[str, Any],
    ) -> LearningResponse: ...

    async def regenerate_guidelines(
        self,
        current_policy: Dict[str, Any],
        learnings: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Dict[str, Any]: ...


M = TypeVar("M", bound=BaseModel)


def parse_response(model: Type[M], raw: Any) -> M:
    """Coerce an oracle response into ``model`` or raise OracleError."""
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        raise OracleError(f"Malformed {model.__name__} from oracle: {e}") from e
