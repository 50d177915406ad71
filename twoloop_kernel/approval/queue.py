"""
Approval Queue — tasks waiting for a human decision.

Behavioral Contract:
- Only PENDING_APPROVAL tasks are in the queue; decisions on anything else
  are rejected without changing state
- approve / edit enqueue the task for execution; reject notifies the tenant
- Operator feedback flagged for Guidelines or Criteria becomes a feedback
  job. This is the only way human feedback reaches either policy, and the
  only way anything reaches Criteria
- Batch decisions never abort on a single failed id
- Expiry moves stale tasks to EXPIRED without running any decision handler
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional

from twoloop_kernel.audit.run_ledger import RunLedger
from twoloop_kernel.errors import NotFoundError, TwoLoopError, ValidationError
from twoloop_kernel.jobs.queue import (
    EXECUTION_QUEUE,
    FEEDBACK_QUEUE,
    JobQueue,
    Notifier,
    QueueNotifier,
)
from twoloop_kernel.log import get_logger
from twoloop_kernel.models.approval import (
    ApprovalDecision,
    BatchFailure,
    BatchResult,
    DecisionType,
    QueuedTask,
    QueueFilter,
    QueueStats,
)
from twoloop_kernel.models.task import Task, TaskStatus
from twoloop_kernel.tasks.repository import TaskRepository

logger = get_logger("approval")

DEFAULT_REJECTION_REASON = "No reason provided"


def _wait_minutes(task: Task, now: datetime) -> float:
    return max(0.0, (now - task.created_at).total_seconds() / 60)


def _queue_order(task: Task):
    return (-task.priority.rank, task.created_at)


class ApprovalQueue:
    """Operator-facing view and actions over PENDING_APPROVAL tasks."""

    def __init__(
        self,
        tasks: TaskRepository,
        jobs: JobQueue,
        notifier: Optional[Notifier] = None,
        ledger: Optional[RunLedger] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.tasks = tasks
        self.jobs = jobs
        self.notifier = notifier or QueueNotifier(jobs)
        self.ledger = ledger
        self._clock = clock

    # --- Views ---

    async def get_pending(self, queue_filter: Optional[QueueFilter] = None) -> List[QueuedTask]:
        f = queue_filter or QueueFilter()

        def wanted(task: Task) -> bool:
            if task.status != TaskStatus.PENDING_APPROVAL:
                return False
            if f.tenant_id and task.tenant_id != f.tenant_id:
                return False
            if f.types and task.type not in f.types:
                return False
            if f.priorities and task.priority not in f.priorities:
                return False
            if f.escalation_reasons and task.escalation_reason not in f.escalation_reasons:
                return False
            if f.assigned_to and task.assigned_to != f.assigned_to:
                return False
            if f.unassigned_only and task.assigned_to is not None:
                return False
            return True

        pending = sorted(await self.tasks.find(wanted), key=_queue_order)
        page = pending[f.offset:f.offset + f.limit]
        now = self._clock()
        return [QueuedTask(task=t, wait_minutes=_wait_minutes(t, now)) for t in page]

    async def get_task_with_context(self, task_id: str) -> QueuedTask:
        """A task plus the Convergence Run that produced it."""
        task = await self.tasks.get(task_id)
        run = None
        if self.ledger is not None and task.convergence_run_id:
            record = self.ledger.get(task.convergence_run_id)
            run = record.model_dump(mode="json") if record else None
        return QueuedTask(task=task, wait_minutes=_wait_minutes(task, self._clock()), run=run)

    async def get_stats(self, tenant_id: Optional[str] = None) -> QueueStats:
        """Queue statistics, computed from the current contents."""
        pending = await self.tasks.list_by_status(TaskStatus.PENDING_APPROVAL, tenant_id)
        now = self._clock()

        by_priority: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        by_reason: Dict[str, int] = {}
        waits = []
        for task in pending:
            by_priority[task.priority.value] = by_priority.get(task.priority.value, 0) + 1
            by_type[task.type.value] = by_type.get(task.type.value, 0) + 1
            if task.escalation_reason:
                key = task.escalation_reason.value
                by_reason[key] = by_reason.get(key, 0) + 1
            waits.append(_wait_minutes(task, now))

        return QueueStats(
            total_pending=len(pending),
            by_priority=by_priority,
            by_type=by_type,
            by_escalation_reason=by_reason,
            unassigned=sum(1 for t in pending if t.assigned_to is None),
            avg_wait_minutes=sum(waits) / len(waits) if waits else 0.0,
            oldest_wait_minutes=max(waits) if waits else 0.0,
            computed_at=now,
        )

    # --- Assignment ---

    async def assign(self, task_id: str, operator_id: str) -> Task:
        return await self.tasks.update(
            task_id,
            expected_status=TaskStatus.PENDING_APPROVAL,
            assigned_to=operator_id,
            assigned_at=self._clock(),
        )

    async def unassign(self, task_id: str) -> Task:
        return await self.tasks.update(
            task_id,
            expected_status=TaskStatus.PENDING_APPROVAL,
            assigned_to=None,
            assigned_at=None,
        )

    async def auto_assign(
        self,
        tenant_id: str,
        operators: List[str],
        max_per_operator: int = 10,
    ) -> Dict[str, List[str]]:
        """
        Round-robin unassigned tasks (most urgent first) across operators.

        Operators already holding ``max_per_operator`` pending tasks are
        skipped; tasks stay unassigned once everyone is saturated.
        """
        operators = list(dict.fromkeys(operators))
        assignments: Dict[str, List[str]] = {op: [] for op in operators}
        if not operators:
            return assignments

        pending = await self.tasks.list_by_status(TaskStatus.PENDING_APPROVAL, tenant_id)
        load = {op: 0 for op in operators}
        for task in pending:
            if task.assigned_to in load:
                load[task.assigned_to] += 1

        unassigned = sorted((t for t in pending if t.assigned_to is None), key=_queue_order)
        cursor = 0
        for task in unassigned:
            chosen = None
            for step in range(len(operators)):
                candidate = operators[(cursor + step) % len(operators)]
                if load[candidate] < max_per_operator:
                    chosen = candidate
                    cursor = (cursor + step + 1) % len(operators)
                    break
            if chosen is None:
                break

            await self.assign(task.id, chosen)
            load[chosen] += 1
            assignments[chosen].append(task.id)

        logger.info(
            "tasks auto-assigned",
            extra={"structured": {
                "tenant_id": tenant_id,
                "assigned": sum(len(v) for v in assignments.values()),
                "left_unassigned": len(unassigned) - sum(len(v) for v in assignments.values()),
            }},
        )
        return assignments

    # --- Decisions ---

    async def process_decision(self, decision: ApprovalDecision) -> Task:
        """Apply an operator's approve / reject / edit decision."""
        task = await self.tasks.get(decision.task_id)
        if task.status != TaskStatus.PENDING_APPROVAL:
            raise ValidationError(
                f"Task {task.id} is {task.status.value}, not awaiting approval"
            )

        if decision.decision == DecisionType.APPROVE:
            updated = await self._approve(task, decision.teleoperator_id)
        elif decision.decision == DecisionType.REJECT:
            updated = await self._reject(task, decision.teleoperator_id, decision.rejection_reason)
        elif decision.decision == DecisionType.EDIT:
            if not decision.edited_content:
                raise ValidationError("Edit decision requires edited_content")
            updated = await self._approve(task, decision.teleoperator_id, decision.edited_content)
        else:
            raise ValidationError(f"Unknown decision type: {decision.decision}")

        self._enqueue_feedback(updated, decision)
        return updated

    async def _approve(self, task: Task, operator_id: str, edited_content=None) -> Task:
        fields = {"approved_by": operator_id, "approved_at": self._clock()}
        if edited_content is not None:
            fields["payload"] = edited_content

        updated = await self.tasks.transition(
            task.id,
            TaskStatus.APPROVED,
            expected_status=TaskStatus.PENDING_APPROVAL,
            **fields,
        )
        self.jobs.add_job(
            EXECUTION_QUEUE,
            "execute-task",
            {"task_id": updated.id, "tenant_id": updated.tenant_id},
        )
        logger.info(
            "task approved",
            extra={"structured": {
                "task_id": updated.id,
                "operator": operator_id,
                "edited": edited_content is not None,
            }},
        )
        return updated

    async def _reject(self, task: Task, operator_id: str, reason: Optional[str]) -> Task:
        reason = reason or DEFAULT_REJECTION_REASON
        updated = await self.tasks.transition(
            task.id,
            TaskStatus.REJECTED,
            expected_status=TaskStatus.PENDING_APPROVAL,
            rejection_reason=reason,
        )
        self.notifier.notify(
            updated.tenant_id,
            "dashboard",
            {
                "type": "task_rejected",
                "task_id": updated.id,
                "task_type": updated.type.value,
                "reason": reason,
                "rejected_by": operator_id,
            },
        )
        logger.info(
            "task rejected",
            extra={"structured": {"task_id": updated.id, "operator": operator_id, "reason": reason}},
        )
        return updated

    def _enqueue_feedback(self, task: Task, decision: ApprovalDecision) -> None:
        if not decision.feedback:
            return
        payload = {
            "task_id": task.id,
            "tenant_id": task.tenant_id,
            "task_type": task.type.value,
            "decision": decision.decision.value,
            "feedback": decision.feedback,
            "teleoperator_id": decision.teleoperator_id,
        }
        if decision.suggest_guidelines_update:
            self.jobs.add_job(FEEDBACK_QUEUE, "guidelines-feedback", payload)
        if decision.suggest_criteria_update:
            self.jobs.add_job(FEEDBACK_QUEUE, "criteria-feedback", payload)

    async def batch_approve(self, task_ids: List[str], teleoperator_id: str) -> BatchResult:
        return await self._batch(
            task_ids,
            lambda task_id: ApprovalDecision(
                task_id=task_id,
                decision=DecisionType.APPROVE,
                teleoperator_id=teleoperator_id,
            ),
        )

    async def batch_reject(
        self, task_ids: List[str], teleoperator_id: str, reason: Optional[str] = None
    ) -> BatchResult:
        return await self._batch(
            task_ids,
            lambda task_id: ApprovalDecision(
                task_id=task_id,
                decision=DecisionType.REJECT,
                teleoperator_id=teleoperator_id,
                rejection_reason=reason,
            ),
        )

    async def _batch(self, task_ids: List[str], make_decision) -> BatchResult:
        result = BatchResult()
        for task_id in task_ids:
            try:
                await self.process_decision(make_decision(task_id))
            except TwoLoopError as e:
                result.failed.append(BatchFailure(task_id=task_id, error=str(e)))
            else:
                result.succeeded.append(task_id)
        return result

    # --- Expiry ---

    async def process_expired_tasks(self, now: Optional[datetime] = None) -> int:
        """Move PENDING_APPROVAL tasks past ``expires_at`` to EXPIRED."""
        if now is None:
            now = self._clock()

        stale = await self.tasks.find(
            lambda t: t.status == TaskStatus.PENDING_APPROVAL
            and t.expires_at is not None
            and t.expires_at < now
        )
        expired = 0
        for task in stale:
            try:
                await self.tasks.transition(
                    task.id,
                    TaskStatus.EXPIRED,
                    expected_status=TaskStatus.PENDING_APPROVAL,
                )
            except (NotFoundError, ValidationError) as e:
                # Decided between the scan and the transition
                logger.debug(
                    "task left queue before expiry",
                    extra={"structured": {"task_id": task.id, "error": str(e)}},
                )
                continue
            expired += 1

        if expired:
            logger.info("tasks expired", extra={"structured": {"count": expired}})
        return expired
