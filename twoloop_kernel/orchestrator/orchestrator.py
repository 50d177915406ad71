"""
Task Orchestrator — the outer loop.

Takes a task request through the Convergence Engine and the Escalation
Decider, then routes the result:

  (a) effectful, or either source escalates → PENDING_APPROVAL (+ notify)
  (b) sandboxed                             → COMPLETED
  (c) eligible for auto-approval            → APPROVED (+ enqueue execution)
  (d) otherwise                             → PENDING_APPROVAL

Behavioral Contract:
- Tasks are created DRAFT and move only along the task state machine
- Executors run only for APPROVED tasks, exactly once, without retries
- The per-tenant daily auto-approval cap is never exceeded, including
  under concurrent requests
- A failed Convergence Run is routed like a non-converged one
- A request is routed only with its own tenant's configuration
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import uuid4

from twoloop_kernel.convergence.engine import ConvergenceEngine
from twoloop_kernel.errors import ConvergenceError, ExecutionError, TwoLoopError, ValidationError
from twoloop_kernel.escalation.decider import EscalationDecider
from twoloop_kernel.evaluation.evaluator import output_text
from twoloop_kernel.execution.registry import ExecutorRegistry
from twoloop_kernel.jobs.queue import EXECUTION_QUEUE, JobQueue, Notifier, QueueNotifier
from twoloop_kernel.log import get_logger
from twoloop_kernel.models.convergence import EngineEscalation, RunConfig, RunContext, RunResult
from twoloop_kernel.models.escalation import EscalationContext, EscalationDecision
from twoloop_kernel.models.orchestration import (
    BatchItemFailure,
    BatchProcessResult,
    OrchestratorConfig,
    TaskRequest,
    TaskResult,
)
from twoloop_kernel.models.task import Task, TaskStatus
from twoloop_kernel.models.tenant import AutonomyLevel, TenantConfig
from twoloop_kernel.orchestrator.counters import AutoApprovalCounter
from twoloop_kernel.tasks.registry import TaskTypeRegistry
from twoloop_kernel.tasks.repository import TaskRepository

logger = get_logger("orchestrator")

DEFAULT_ESCALATION_CHANNEL = "dashboard"


class TaskOrchestrator:
    """Routes converged (or failed) work to completion, approval, or execution."""

    def __init__(
        self,
        engine: ConvergenceEngine,
        decider: EscalationDecider,
        tasks: TaskRepository,
        jobs: JobQueue,
        notifier: Optional[Notifier] = None,
        executors: Optional[ExecutorRegistry] = None,
        task_types: Optional[TaskTypeRegistry] = None,
        counter: Optional[AutoApprovalCounter] = None,
        config: Optional[OrchestratorConfig] = None,
        run_config: Optional[RunConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.engine = engine
        self.decider = decider
        self.tasks = tasks
        self.jobs = jobs
        self.notifier = notifier or QueueNotifier(jobs)
        self.executors = executors or ExecutorRegistry()
        self.task_types = task_types or engine.task_types
        self.counter = counter or AutoApprovalCounter()
        self.config = config or OrchestratorConfig()
        self.run_config = run_config or RunConfig()
        self._clock = clock
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # --- Processing ---

    async def process_task(self, request: TaskRequest, tenant_config: TenantConfig) -> TaskResult:
        """Converge one task and route it."""
        if request.tenant_id != tenant_config.tenant_id:
            raise ValidationError(
                f"Task for tenant {request.tenant_id} cannot be routed "
                f"with the configuration of tenant {tenant_config.tenant_id}"
            )

        # 1. Classify
        spec = self.task_types.get(request.type)

        # 2. Converge
        context = RunContext(
            tenant_id=request.tenant_id,
            task_type=request.type,
            input=request.input,
            config=request.run_config or self.run_config,
        )
        outcome = await self._converge(context)
        run = outcome.run

        # 3. Escalation rules over the same output
        decision = self.decider.evaluate(EscalationContext(
            task_type=request.type,
            tenant_config=tenant_config,
            content=output_text(run.final_output) if run.final_output else None,
            confidence_score=run.final_score,
            candidate_flags=request.candidate_flags,
            conversation_intent=request.conversation_intent,
            custom=request.metadata,
        ))

        # 4. Create the task
        now = self._clock()
        priority = request.priority
        if decision.should_escalate and decision.priority and decision.priority.rank > priority.rank:
            priority = decision.priority
        task = await self.tasks.create(Task(
            id=f"task_{uuid4().hex[:12]}",
            tenant_id=request.tenant_id,
            type=request.type,
            priority=priority,
            input=request.input,
            payload=run.final_output.content if run.final_output else {},
            iteration_count=run.total_iterations,
            confidence_score=run.final_score,
            convergence_run_id=run.id,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=self.config.approval_expiry_hours),
        ))

        # 5. Route
        auto_approved = False
        escalated = decision.should_escalate or outcome.escalation.required
        if self.task_types.is_effectful(spec.task_type) or escalated:
            task = await self._escalate(task, decision, outcome.escalation)
        elif self.task_types.is_sandboxed(request.type):
            task = await self.tasks.transition(
                task.id,
                TaskStatus.COMPLETED,
                expected_status=TaskStatus.DRAFT,
                result=task.payload,
                completed_at=self._clock(),
            )
        elif await self._try_auto_approve(task, tenant_config, run.converged, run.final_score):
            task = await self.tasks.get(task.id)
            auto_approved = True
        else:
            task = await self.tasks.transition(
                task.id, TaskStatus.PENDING_APPROVAL, expected_status=TaskStatus.DRAFT
            )

        logger.info(
            "task routed",
            extra={"structured": {
                "task_id": task.id,
                "tenant_id": task.tenant_id,
                "task_type": task.type.value,
                "status": task.status.value,
                "run_id": run.id,
                "run_status": run.status.value,
                "auto_approved": auto_approved,
            }},
        )
        return TaskResult(
            task=task,
            run_id=run.id,
            run_status=run.status,
            converged=run.converged,
            final_score=run.final_score,
            iterations=run.total_iterations,
            escalation=decision,
            engine_escalation_reasons=[r.value for r in outcome.escalation.reasons],
            auto_approved=auto_approved,
        )

    async def _converge(self, context: RunContext) -> RunResult:
        try:
            return await self.engine.run(context)
        except ConvergenceError as e:
            logger.warning(
                "routing failed run as non-converged",
                extra={"structured": {"run_id": e.run.id, "error": str(e)}},
            )
            return RunResult(run=e.run, escalation=self.engine.determine_escalation(e.run, context))

    async def _escalate(
        self,
        task: Task,
        decision: EscalationDecision,
        engine_escalation: EngineEscalation,
    ) -> Task:
        reason = decision.reason if decision.should_escalate else None
        if reason is None:
            reason = engine_escalation.reason

        if decision.should_escalate:
            channels = decision.channels or [DEFAULT_ESCALATION_CHANNEL]
            message = decision.message
        else:
            channels = [DEFAULT_ESCALATION_CHANNEL]
            message = "; ".join(engine_escalation.messages) or None

        task = await self.tasks.transition(
            task.id,
            TaskStatus.PENDING_APPROVAL,
            expected_status=TaskStatus.DRAFT,
            escalation_reason=reason,
        )
        if reason is None:
            # Effectful task with nothing to flag
            return task

        for channel in channels:
            self.notifier.notify(
                task.tenant_id,
                channel,
                {
                    "type": "task_escalated",
                    "task_id": task.id,
                    "task_type": task.type.value,
                    "reason": reason.value,
                    "priority": task.priority.value,
                    "message": message,
                },
            )
        return task

    async def _try_auto_approve(
        self,
        task: Task,
        tenant_config: TenantConfig,
        converged: bool,
        score: Optional[float],
    ) -> bool:
        autonomy = tenant_config.autonomy
        if not self.config.auto_approval_enabled:
            return False
        if autonomy.level == AutonomyLevel.CONSERVATIVE:
            return False
        if not converged or score is None:
            return False

        threshold = autonomy.auto_approval_threshold
        if threshold is None:
            threshold = self.config.auto_approval_threshold
        if score < threshold:
            return False

        if not autonomy.rules_bypassed and not any(
            rule.matches(task.type, score) for rule in autonomy.auto_approval_rules
        ):
            return False

        # Budget is checked last so ineligible tasks never consume it
        cap = min(self.config.max_auto_approvals_per_day, autonomy.max_daily_auto_approvals)
        if not await self.counter.try_acquire(task.tenant_id, cap):
            logger.info(
                "daily auto-approval cap reached",
                extra={"structured": {"tenant_id": task.tenant_id, "cap": cap}},
            )
            return False

        try:
            await self.tasks.transition(
                task.id,
                TaskStatus.APPROVED,
                expected_status=TaskStatus.DRAFT,
                approved_by="system:auto-approval",
                approved_at=self._clock(),
            )
        except TwoLoopError:
            await self.counter.release(task.tenant_id)
            raise

        self.jobs.add_job(
            EXECUTION_QUEUE,
            "execute-task",
            {"task_id": task.id, "tenant_id": task.tenant_id},
        )
        return True

    async def process_batch(
        self, requests: List[TaskRequest], tenant_config: TenantConfig
    ) -> BatchProcessResult:
        """Process requests in chunks of ``max_concurrent_executions``."""
        result = BatchProcessResult()
        size = self.config.max_concurrent_executions

        for start in range(0, len(requests), size):
            chunk = requests[start:start + size]
            outcomes = await asyncio.gather(
                *(self.process_task(r, tenant_config) for r in chunk),
                return_exceptions=True,
            )
            for offset, outcome in enumerate(outcomes):
                if isinstance(outcome, TaskResult):
                    result.results.append(outcome)
                elif isinstance(outcome, Exception):
                    index = start + offset
                    logger.error(
                        "batch item failed",
                        extra={"structured": {"index": index, "error": str(outcome)}},
                    )
                    result.failed.append(BatchItemFailure(
                        index=index,
                        task_type=chunk[offset].type,
                        error=str(outcome),
                    ))
                else:
                    raise outcome
        return result

    # --- Execution ---

    async def execute_task(self, task_id: str) -> Task:
        """
        Run the executor for an APPROVED task.

        Raises ExecutionError after marking the task FAILED when the
        executor raises or reports ``success: False``.
        """
        task = await self.tasks.transition(
            task_id, TaskStatus.EXECUTING, expected_status=TaskStatus.APPROVED
        )
        result = await self.executors.dispatch(task)

        if not result.get("success", False):
            error = result.get("error") or "Executor reported failure"
            await self.tasks.transition(
                task_id,
                TaskStatus.FAILED,
                expected_status=TaskStatus.EXECUTING,
                error=error,
                result=result,
                completed_at=self._clock(),
            )
            logger.error(
                "task execution failed",
                extra={"structured": {"task_id": task_id, "error": error}},
            )
            raise ExecutionError(f"Task {task_id} failed: {error}")

        completed = await self.tasks.transition(
            task_id,
            TaskStatus.COMPLETED,
            expected_status=TaskStatus.EXECUTING,
            result=result,
            completed_at=self._clock(),
        )
        logger.info(
            "task executed",
            extra={"structured": {
                "task_id": task_id,
                "task_type": completed.type.value,
                "duration": result.get("duration"),
            }},
        )
        return completed

    async def drain_execution_queue(self) -> int:
        """Execute every queued task once. Returns how many jobs were handled."""
        handled = 0
        for job in self.jobs.drain(EXECUTION_QUEUE):
            handled += 1
            try:
                await self.execute_task(job.payload["task_id"])
            except TwoLoopError as e:
                logger.warning(
                    "execution job failed",
                    extra={"structured": {"job_id": job.id, "error": str(e)}},
                )
        return handled

    async def run_execution_worker(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Consume the execution queue until ``stop_event`` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                await self.drain_execution_queue()
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.worker_poll_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False

    async def reset_auto_approval_counts(self, tenant_id: Optional[str] = None) -> None:
        """Hook for the external daily scheduler."""
        await self.counter.reset(tenant_id)
