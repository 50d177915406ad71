"""
Convergence Engine — the inner generate → evaluate → learn loop.

For one task instance:
  - Generate output from the working Guidelines
  - Score it against the tenant's ACTIVE Criteria
  - On failure, learn: patch (or regenerate) the working Guidelines, retry
  - Stop on convergence, iteration budget exhaustion, or timeout

Behavioral Contract:
- Iterations are strictly sequential; each one generates from the policy
  produced by the previous one
- The working policy is a value, never written to the Policy Store mid-run
- Criteria are read once per Run through a read-only view and never written
- Learned edits are persisted after the Run as a Guidelines DRAFT only
- Every Run ends in a terminal status and is appended to the audit ledger
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple
from uuid import uuid4

from twoloop_kernel.audit.run_ledger import RunLedger
from twoloop_kernel.errors import ConvergenceError, OracleError, ValidationError
from twoloop_kernel.evaluation.evaluator import RubricEvaluator
from twoloop_kernel.log import get_logger
from twoloop_kernel.models.convergence import (
    ConvergenceRun,
    EngineEscalation,
    GeneratedOutput,
    Iteration,
    IterationLearning,
    RunContext,
    RunError,
    RunResult,
    RunStatus,
)
from twoloop_kernel.models.evaluation import EvaluationResult
from twoloop_kernel.models.policy import Author
from twoloop_kernel.models.task import EscalationReason, TaskType
from twoloop_kernel.oracle.base import (
    GenerationOracle,
    GenerationResponse,
    LearningResponse,
    parse_response,
)
from twoloop_kernel.policy.patch import (
    PolicyPatchError,
    WorkingPolicy,
    targets_structural_section,
)
from twoloop_kernel.policy.store import GuidelinesStore, ReadOnlyPolicyView
from twoloop_kernel.tasks.registry import TaskTypeRegistry

logger = get_logger("convergence")

DEFAULT_SENSITIVE_TASK_TYPES = (TaskType.PREPARE_OFFER, TaskType.SEND_OFFER)


class ConvergenceEngine:
    """
    Drives one Convergence Run per call to ``run``.

    States:
      GENERATE → EVALUATE → (CONVERGED | LEARN → GENERATE | MAX_ITERATIONS)
    """

    def __init__(
        self,
        oracle: GenerationOracle,
        guidelines_store: GuidelinesStore,
        criteria_store,
        evaluator: Optional[RubricEvaluator] = None,
        ledger: Optional[RunLedger] = None,
        task_types: Optional[TaskTypeRegistry] = None,
        sensitive_task_types: Optional[Iterable[TaskType]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.oracle = oracle
        self.guidelines = guidelines_store
        self.criteria = ReadOnlyPolicyView(criteria_store)
        self.task_types = task_types or TaskTypeRegistry.default()
        self.evaluator = evaluator or RubricEvaluator(oracle, task_types=self.task_types)
        self.ledger = ledger
        self.sensitive_task_types = set(
            DEFAULT_SENSITIVE_TASK_TYPES if sensitive_task_types is None else sensitive_task_types
        )
        self._clock = clock

    async def run(self, context: RunContext) -> RunResult:
        """
        Run the loop for one task.

        Raises ConvergenceError (carrying the completed ERROR Run) when the
        oracle or policy reads fail. Timeouts are not raised; they end the
        Run with status ERROR and error code TIMEOUT.
        """
        run = ConvergenceRun(
            id=f"run_{uuid4().hex[:12]}",
            tenant_id=context.tenant_id,
            task_type=context.task_type,
            started_at=datetime.utcnow(),
        )
        logger.info(
            "convergence run started",
            extra={"structured": {
                "run_id": run.id,
                "tenant_id": run.tenant_id,
                "task_type": run.task_type.value,
                "max_iterations": context.config.max_iterations,
            }},
        )

        try:
            working = await self._iterate(run, context)
        except OracleError as e:
            self._fail(run, "ORACLE_ERROR", str(e), recoverable=True)
            raise ConvergenceError(f"Run {run.id} failed: {e}", run) from e
        except Exception as e:
            self._fail(run, "EXECUTION_ERROR", str(e), recoverable=False)
            raise ConvergenceError(f"Run {run.id} failed: {e}", run) from e

        escalation = self.determine_escalation(run, context)
        await self._persist_learnings(run, context, working)
        self._record(run)

        logger.info(
            "convergence run finished",
            extra={"structured": {
                "run_id": run.id,
                "status": run.status.value,
                "iterations": run.total_iterations,
                "final_score": run.final_score,
                "tokens_used": run.total_tokens_used,
                "escalation_required": escalation.required,
            }},
        )
        return RunResult(run=run, escalation=escalation)

    async def _iterate(self, run: ConvergenceRun, context: RunContext) -> WorkingPolicy:
        config = context.config
        started = self._clock()

        guidelines = await self.guidelines.get_active(context.tenant_id)
        criteria_version = await self.criteria.get_active(context.tenant_id)
        criteria = criteria_version.criteria()
        run.guidelines_version = guidelines.version
        run.criteria_version = criteria_version.version

        working = WorkingPolicy.from_document(guidelines.content, base_version=guidelines.version)
        constraints = [c.model_dump(mode="json") for c in context.input.constraints] or None

        for number in range(1, config.max_iterations + 1):
            # 1. Wall-clock budget
            elapsed = self._clock() - started
            if elapsed > config.timeout_seconds:
                run.status = RunStatus.ERROR
                run.error = RunError(
                    code="TIMEOUT",
                    message=(
                        f"Run exceeded {config.timeout_seconds}s timeout "
                        f"after {run.total_iterations} iterations"
                    ),
                    recoverable=True,
                )
                logger.warning(
                    "convergence run timed out",
                    extra={"structured": {"run_id": run.id, "elapsed_seconds": round(elapsed, 3)}},
                )
                break

            iteration_started = self._clock()
            snapshot = working.snapshot()

            # 2. Generate
            raw = await self.oracle.generate(
                context.task_type,
                context.input.data,
                snapshot,
                constraints,
            )
            generated = parse_response(GenerationResponse, raw)
            output = GeneratedOutput(
                content=generated.content,
                tokens_used=generated.tokens_used,
                latency_ms=generated.latency_ms,
                model_id=generated.model_id,
                generated_at=datetime.utcnow(),
            )

            # 3. Evaluate
            evaluation = await self.evaluator.evaluate(
                output,
                criteria,
                config.dimensions,
                passing_threshold=config.convergence_threshold,
                task_type=context.task_type,
            )

            iteration = Iteration(
                number=number,
                output=output,
                policy_snapshot=snapshot,
                evaluation=evaluation,
            )
            run.iterations.append(iteration)
            run.final_output = output
            run.final_score = evaluation.overall_score

            logger.debug(
                "iteration evaluated",
                extra={"structured": {
                    "run_id": run.id,
                    "iteration": number,
                    "score": evaluation.overall_score,
                    "passed": evaluation.passed,
                }},
            )

            # 4. Converged
            if evaluation.passed:
                iteration.duration_ms = (self._clock() - iteration_started) * 1000
                run.converged = True
                run.status = RunStatus.CONVERGED
                break

            # 5. Learn against the working copy only
            learning, working = await self._learn(run, context, working, output, evaluation, number)
            iteration.learning = learning
            run.guidelines_updates.extend(learning.proposed_updates)
            iteration.duration_ms = (self._clock() - iteration_started) * 1000

        else:
            # 6. Budget exhausted without convergence
            run.status = RunStatus.MAX_ITERATIONS_REACHED

        run.completed_at = datetime.utcnow()
        return working

    async def _learn(
        self,
        run: ConvergenceRun,
        context: RunContext,
        working: WorkingPolicy,
        output: GeneratedOutput,
        evaluation: EvaluationResult,
        number: int,
    ) -> Tuple[IterationLearning, WorkingPolicy]:
        learn_context = {
            "tenant_id": context.tenant_id,
            "task_type": context.task_type.value,
            "domain": self.task_types.domain_of(context.task_type),
            "iteration": number,
            "input": context.input.data,
        }
        raw = await self.oracle.extract_learnings(
            output.content,
            evaluation.model_dump(mode="json"),
            learn_context,
        )
        learned = parse_response(LearningResponse, raw)
        updates = learned.proposed_updates

        regenerate = (
            len(updates) > context.config.learn_regenerate_threshold
            or any(targets_structural_section(u) for u in updates)
        )

        if regenerate:
            sections = await self.oracle.regenerate_guidelines(
                working.snapshot(),
                learned.model_dump(mode="json"),
                learn_context,
            )
            if not isinstance(sections, dict):
                raise OracleError("regenerate_guidelines must return a mapping of sections")
            try:
                working = working.with_sections(sections, updates)
            except PolicyPatchError as e:
                raise OracleError(str(e)) from e
            rejected = []
            strategy = "regenerate"
        else:
            working, rejected = working.with_updates(updates)
            strategy = "patch"
            if rejected:
                logger.warning(
                    "guidelines updates could not be applied",
                    extra={"structured": {
                        "run_id": run.id,
                        "iteration": number,
                        "paths": [u.path for u in rejected],
                    }},
                )

        learning = IterationLearning(
            insights=learned.insights,
            proposed_updates=updates,
            reasoning=learned.reasoning,
            strategy=strategy,
            rejected_updates=rejected,
        )
        return learning, working

    def determine_escalation(self, run: ConvergenceRun, context: RunContext) -> EngineEscalation:
        """Decide from the Run's final state whether a human must review."""
        config = context.config
        reasons: List[EscalationReason] = []
        messages: List[str] = []
        score = run.final_score if run.final_score is not None else 0.0

        if not run.converged:
            reasons.append(EscalationReason.EDGE_CASE)
            messages.append(
                f"Task did not converge after {run.total_iterations} iterations "
                f"(score: {score:.2f})"
            )

        if score < config.escalation_confidence_threshold:
            reasons.append(EscalationReason.LOW_CONFIDENCE)
            messages.append(
                f"Output confidence below threshold "
                f"({score:.2f} < {config.escalation_confidence_threshold:.2f})"
            )

        if context.task_type in self.sensitive_task_types:
            reasons.append(EscalationReason.SENSITIVE_COMMUNICATION)
            messages.append(f"Sensitive task type: {context.task_type.value}")

        for constraint in context.input.constraints:
            if constraint.type == "custom" and constraint.config.get("requires_escalation"):
                reasons.append(EscalationReason.MANUAL_REVIEW_REQUESTED)
                messages.append("Escalation required by input constraint")
                break

        return EngineEscalation(required=bool(reasons), reasons=reasons, messages=messages)

    async def _persist_learnings(
        self,
        run: ConvergenceRun,
        context: RunContext,
        working: WorkingPolicy,
    ) -> None:
        """Store the learned Guidelines as an agent-authored DRAFT."""
        if not context.config.persist_learnings or not working.applied:
            return
        if run.status not in (RunStatus.CONVERGED, RunStatus.MAX_ITERATIONS_REACHED):
            return

        changelog = f"Learned during run {run.id}\n\nUpdates:\n" + "\n".join(
            f"- {u.operation.value}: {u.path}" for u in working.applied
        )
        try:
            run.draft_version_id = await self.guidelines.create_draft(
                run.tenant_id,
                working.content,
                Author.AGENT,
                changelog=changelog,
            )
        except ValidationError as e:
            logger.warning(
                "learned guidelines rejected by store",
                extra={"structured": {"run_id": run.id, "error": str(e)}},
            )

    def _fail(self, run: ConvergenceRun, code: str, message: str, recoverable: bool) -> None:
        run.status = RunStatus.ERROR
        run.error = RunError(code=code, message=message, recoverable=recoverable)
        run.completed_at = datetime.utcnow()
        logger.error(
            "convergence run failed",
            extra={"structured": {
                "run_id": run.id,
                "error_code": code,
                "error": message,
                "recoverable": recoverable,
            }},
        )
        self._record(run)

    def _record(self, run: ConvergenceRun) -> None:
        if self.ledger is not None:
            self.ledger.append(run)
