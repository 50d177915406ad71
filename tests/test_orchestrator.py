"""Tests for the Task Orchestrator and the auto-approval counter."""

import asyncio
from datetime import date

import pytest

from twoloop_kernel.convergence.engine import ConvergenceEngine
from twoloop_kernel.errors import ExecutionError, ValidationError
from twoloop_kernel.escalation.decider import EscalationDecider
from twoloop_kernel.execution.registry import ExecutorRegistry
from twoloop_kernel.jobs.queue import EXECUTION_QUEUE, NOTIFICATION_QUEUE, JobQueue
from twoloop_kernel.models.convergence import RunStatus
from twoloop_kernel.models.orchestration import OrchestratorConfig, TaskRequest
from twoloop_kernel.models.task import (
    EscalationReason,
    Priority,
    TaskInput,
    TaskStatus,
    TaskType,
)
from twoloop_kernel.models.tenant import (
    AutoApprovalRule,
    AutonomyConfig,
    AutonomyLevel,
    TenantConfig,
)
from twoloop_kernel.oracle.scripted import ScriptedOracle
from twoloop_kernel.orchestrator.counters import AutoApprovalCounter
from twoloop_kernel.orchestrator.orchestrator import TaskOrchestrator
from twoloop_kernel.policy.store import CriteriaStore, GuidelinesStore
from twoloop_kernel.tasks.registry import DEFAULT_TASK_TYPES, TaskTypeRegistry
from twoloop_kernel.tasks.repository import TaskRepository

TENANT = "tenant_a"

GUIDELINES = {
    "templates": [{
        "id": "tpl_intro",
        "name": "Intro",
        "type": "initial_outreach",
        "subject": "Hello {{candidate_name}}",
        "body": "Hi {{candidate_name}}, your background fits our {{role}} opening.",
        "variables": ["candidate_name", "role"],
    }],
}

CRITERIA = {
    "evaluation_rubrics": [{
        "id": "rub_general",
        "name": "General",
        "domain": "outreach",
        "dimensions": [{"id": "quality", "name": "Quality"}],
    }],
}

ATS_RULE = AutoApprovalRule(id="r_ats", name="ATS updates", task_types=[TaskType.UPDATE_ATS_STATUS])


async def _make_orchestrator(oracle: ScriptedOracle = None, **kwargs):
    guidelines = GuidelinesStore()
    criteria = CriteriaStore()
    await guidelines.bootstrap(TENANT, GUIDELINES)
    await criteria.bootstrap(TENANT, CRITERIA)
    engine = ConvergenceEngine(oracle or ScriptedOracle(scores=[0.95]), guidelines, criteria)
    tasks = TaskRepository()
    jobs = JobQueue()
    orchestrator = TaskOrchestrator(engine, EscalationDecider(), tasks, jobs, **kwargs)
    return orchestrator, tasks, jobs


def _make_tenant(level: AutonomyLevel = AutonomyLevel.MODERATE, **autonomy) -> TenantConfig:
    autonomy.setdefault("auto_approval_rules", [ATS_RULE])
    return TenantConfig(tenant_id=TENANT, autonomy=AutonomyConfig(level=level, **autonomy))


def _make_request(task_type: TaskType = TaskType.UPDATE_ATS_STATUS, **kwargs) -> TaskRequest:
    return TaskRequest(
        tenant_id=TENANT,
        type=task_type,
        input=TaskInput(
            candidate_id="cand_1",
            data={"candidate_name": "Ada", "role": "Compiler Engineer"},
        ),
        **kwargs,
    )


class TestRouting:
    @pytest.mark.asyncio
    async def test_sandboxed_task_completes(self):
        orchestrator, _, jobs = await _make_orchestrator()

        result = await orchestrator.process_task(_make_request(TaskType.SCREEN_RESUME), _make_tenant())

        assert result.task.status == TaskStatus.COMPLETED
        assert result.task.result == result.task.payload
        assert result.task.completed_at is not None
        assert jobs.size(EXECUTION_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_effectful_task_always_held(self):
        orchestrator, _, jobs = await _make_orchestrator()
        tenant = _make_tenant(
            level=AutonomyLevel.HIGH,
            auto_approval_rules=[AutoApprovalRule(id="any", name="Any")],
        )

        result = await orchestrator.process_task(_make_request(TaskType.SEND_EMAIL), tenant)

        assert result.task.status == TaskStatus.PENDING_APPROVAL
        assert result.task.escalation_reason is None
        assert not result.auto_approved
        assert jobs.size(NOTIFICATION_QUEUE) == 0
        assert jobs.size(EXECUTION_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_vip_candidate_escalates_with_notification(self):
        orchestrator, _, jobs = await _make_orchestrator()

        result = await orchestrator.process_task(
            _make_request(TaskType.SEND_EMAIL, candidate_flags=["vip"]), _make_tenant(),
        )

        assert result.task.status == TaskStatus.PENDING_APPROVAL
        assert result.task.escalation_reason == EscalationReason.FIRST_CONTACT_VIP
        assert result.task.priority == Priority.HIGH
        note = jobs.pop(NOTIFICATION_QUEUE)
        assert note.name == "notify:dashboard"
        assert note.payload["type"] == "task_escalated"
        assert note.payload["reason"] == "FIRST_CONTACT_VIP"

    @pytest.mark.asyncio
    async def test_engine_only_escalation_goes_to_dashboard(self):
        orchestrator, _, jobs = await _make_orchestrator(ScriptedOracle(scores=[0.85]))

        result = await orchestrator.process_task(_make_request(TaskType.SCREEN_RESUME), _make_tenant())

        assert result.task.status == TaskStatus.PENDING_APPROVAL
        assert result.task.escalation_reason == EscalationReason.LOW_CONFIDENCE
        assert not result.escalation.should_escalate
        assert result.engine_escalation_reasons == ["LOW_CONFIDENCE"]
        notes = jobs.pending(NOTIFICATION_QUEUE)
        assert [n.name for n in notes] == ["notify:dashboard"]
        assert "below threshold" in notes[0].payload["message"]

    @pytest.mark.asyncio
    async def test_request_priority_kept_when_higher(self):
        orchestrator, _, _ = await _make_orchestrator()

        result = await orchestrator.process_task(
            _make_request(TaskType.SEND_EMAIL, candidate_flags=["vip"], priority=Priority.URGENT),
            _make_tenant(),
        )

        assert result.task.priority == Priority.URGENT

    @pytest.mark.asyncio
    async def test_oracle_failure_routes_as_non_converged(self):
        orchestrator, _, _ = await _make_orchestrator(ScriptedOracle(fail_on="generate"))

        result = await orchestrator.process_task(_make_request(), _make_tenant())

        assert result.run_status == RunStatus.ERROR
        assert not result.converged
        assert result.task.status == TaskStatus.PENDING_APPROVAL
        assert result.task.escalation_reason == EscalationReason.EDGE_CASE
        assert result.task.payload == {}


class TestAutoApproval:
    @pytest.mark.asyncio
    async def test_matching_rule_approves_and_enqueues(self):
        orchestrator, _, jobs = await _make_orchestrator()

        result = await orchestrator.process_task(_make_request(), _make_tenant())

        assert result.auto_approved
        assert result.task.status == TaskStatus.APPROVED
        assert result.task.approved_by == "system:auto-approval"
        job = jobs.pop(EXECUTION_QUEUE)
        assert job.name == "execute-task"
        assert job.payload["task_id"] == result.task.id

    @pytest.mark.asyncio
    async def test_no_matching_rule_goes_to_queue(self):
        orchestrator, _, jobs = await _make_orchestrator()

        result = await orchestrator.process_task(
            _make_request(TaskType.SYNC_CANDIDATE), _make_tenant(),
        )

        assert result.task.status == TaskStatus.PENDING_APPROVAL
        assert result.task.escalation_reason is None
        assert jobs.size(EXECUTION_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_high_autonomy_bypasses_rules(self):
        orchestrator, _, _ = await _make_orchestrator()

        result = await orchestrator.process_task(
            _make_request(TaskType.SYNC_CANDIDATE),
            _make_tenant(level=AutonomyLevel.HIGH, auto_approval_rules=[]),
        )

        assert result.auto_approved

    @pytest.mark.asyncio
    async def test_explicit_bypass_flag_wins_over_level(self):
        orchestrator, _, _ = await _make_orchestrator()

        result = await orchestrator.process_task(
            _make_request(TaskType.SYNC_CANDIDATE),
            _make_tenant(level=AutonomyLevel.HIGH, auto_approval_rules=[], bypass_auto_approval_rules=False),
        )

        assert not result.auto_approved

    @pytest.mark.asyncio
    async def test_conservative_tenant_never_auto_approves(self):
        orchestrator, _, _ = await _make_orchestrator()

        result = await orchestrator.process_task(
            _make_request(), _make_tenant(level=AutonomyLevel.CONSERVATIVE),
        )

        assert result.task.status == TaskStatus.PENDING_APPROVAL
        assert result.task.escalation_reason == EscalationReason.MANUAL_REVIEW_REQUESTED

    @pytest.mark.asyncio
    async def test_tenant_threshold_applies(self):
        orchestrator, _, _ = await _make_orchestrator()

        result = await orchestrator.process_task(
            _make_request(), _make_tenant(auto_approval_threshold=0.99),
        )

        assert not result.auto_approved
        assert result.task.status == TaskStatus.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_disabled_globally(self):
        orchestrator, _, _ = await _make_orchestrator(
            config=OrchestratorConfig(auto_approval_enabled=False),
        )
        result = await orchestrator.process_task(_make_request(), _make_tenant())
        assert not result.auto_approved

    @pytest.mark.asyncio
    async def test_daily_cap(self):
        orchestrator, _, _ = await _make_orchestrator()
        tenant = _make_tenant(max_daily_auto_approvals=2)

        results = [await orchestrator.process_task(_make_request(), tenant) for _ in range(3)]

        assert [r.auto_approved for r in results] == [True, True, False]
        assert results[2].task.status == TaskStatus.PENDING_APPROVAL
        assert await orchestrator.counter.get(TENANT) == 2

    @pytest.mark.asyncio
    async def test_cap_holds_under_concurrency(self):
        orchestrator, _, jobs = await _make_orchestrator()
        tenant = _make_tenant(max_daily_auto_approvals=3)

        batch = await orchestrator.process_batch([_make_request() for _ in range(8)], tenant)

        assert batch.failed == []
        assert sum(1 for r in batch.results if r.auto_approved) == 3
        assert jobs.size(EXECUTION_QUEUE) == 3

    @pytest.mark.asyncio
    async def test_reset_restores_budget(self):
        orchestrator, _, _ = await _make_orchestrator()
        tenant = _make_tenant(max_daily_auto_approvals=1)

        assert (await orchestrator.process_task(_make_request(), tenant)).auto_approved
        assert not (await orchestrator.process_task(_make_request(), tenant)).auto_approved

        await orchestrator.reset_auto_approval_counts(TENANT)
        assert (await orchestrator.process_task(_make_request(), tenant)).auto_approved


class TestBatch:
    @pytest.mark.asyncio
    async def test_failures_reported_by_index(self):
        orchestrator, _, _ = await _make_orchestrator(config=OrchestratorConfig(max_concurrent_executions=2))
        requests = [
            _make_request(TaskType.SCREEN_RESUME),
            _make_request(TaskType.SCREEN_RESUME).model_copy(update={"tenant_id": "tenant_unknown"}),
            _make_request(TaskType.SCREEN_RESUME),
        ]

        batch = await orchestrator.process_batch(requests, _make_tenant())

        assert len(batch.results) == 2
        assert [f.index for f in batch.failed] == [1]
        assert "tenant_unknown" in batch.failed[0].error

    @pytest.mark.asyncio
    async def test_foreign_tenant_request_is_not_routed(self):
        orchestrator, tasks, jobs = await _make_orchestrator()
        requests = [_make_request().model_copy(update={"tenant_id": "tenant_b"})]

        batch = await orchestrator.process_batch(requests, _make_tenant(level=AutonomyLevel.HIGH))

        assert batch.results == []
        assert batch.failed[0].index == 0
        assert batch.failed[0].task_type == TaskType.UPDATE_ATS_STATUS
        assert tasks.count() == 0
        assert jobs.size(EXECUTION_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_process_task_rejects_other_tenant_config(self):
        orchestrator, tasks, _ = await _make_orchestrator()
        request = _make_request().model_copy(update={"tenant_id": "tenant_b"})

        with pytest.raises(ValidationError):
            await orchestrator.process_task(request, _make_tenant(level=AutonomyLevel.HIGH))
        assert tasks.count() == 0

    @pytest.mark.asyncio
    async def test_tenant_without_policies_is_held(self):
        orchestrator, _, _ = await _make_orchestrator()
        request = _make_request(TaskType.SCREEN_RESUME).model_copy(update={"tenant_id": "tenant_unknown"})

        result = await orchestrator.process_task(request, TenantConfig(tenant_id="tenant_unknown"))

        # No guidelines, so the run fails and the task is held for review
        assert result.task.status == TaskStatus.PENDING_APPROVAL
        assert result.run_status == RunStatus.ERROR

    @pytest.mark.asyncio
    async def test_unregistered_task_type_fails_item(self):
        registry = TaskTypeRegistry(
            s for s in DEFAULT_TASK_TYPES if s.task_type != TaskType.GENERATE_REPORT
        )
        orchestrator, _, _ = await _make_orchestrator(task_types=registry)

        batch = await orchestrator.process_batch(
            [_make_request(TaskType.SCREEN_RESUME), _make_request(TaskType.GENERATE_REPORT)],
            _make_tenant(),
        )

        assert len(batch.results) == 1
        assert batch.failed[0].index == 1
        assert batch.failed[0].task_type == TaskType.GENERATE_REPORT


class TestExecution:
    @pytest.mark.asyncio
    async def test_execute_approved_task(self):
        orchestrator, _, _ = await _make_orchestrator()
        result = await orchestrator.process_task(_make_request(), _make_tenant())

        task = await orchestrator.execute_task(result.task.id)

        assert task.status == TaskStatus.COMPLETED
        assert task.result["success"]
        assert task.result["candidate_id"] == "cand_1"
        assert task.result["task_type"] == "UPDATE_ATS_STATUS"

    @pytest.mark.asyncio
    async def test_failing_executor_marks_failed(self):
        def broken(task):
            raise RuntimeError("ATS unavailable")

        executors = ExecutorRegistry()
        executors.register_executor(TaskType.UPDATE_ATS_STATUS, broken)
        orchestrator, tasks, _ = await _make_orchestrator(executors=executors)
        result = await orchestrator.process_task(_make_request(), _make_tenant())

        with pytest.raises(ExecutionError):
            await orchestrator.execute_task(result.task.id)

        failed = await tasks.get(result.task.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.error == "ATS unavailable"

    @pytest.mark.asyncio
    async def test_executor_reporting_failure(self):
        executors = ExecutorRegistry()
        executors.register_executor(
            TaskType.UPDATE_ATS_STATUS, lambda task: {"success": False, "error": "Stage locked"},
        )
        orchestrator, tasks, _ = await _make_orchestrator(executors=executors)
        result = await orchestrator.process_task(_make_request(), _make_tenant())

        with pytest.raises(ExecutionError):
            await orchestrator.execute_task(result.task.id)
        assert (await tasks.get(result.task.id)).error == "Stage locked"

    @pytest.mark.asyncio
    async def test_only_approved_tasks_execute(self):
        calls = []
        executors = ExecutorRegistry()
        executors.register_executor(TaskType.SEND_EMAIL, lambda task: calls.append(task.id) or {})
        orchestrator, tasks, _ = await _make_orchestrator(executors=executors)
        result = await orchestrator.process_task(_make_request(TaskType.SEND_EMAIL), _make_tenant())

        with pytest.raises(ValidationError):
            await orchestrator.execute_task(result.task.id)

        assert calls == []
        assert (await tasks.get(result.task.id)).status == TaskStatus.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_executes_at_most_once(self):
        orchestrator, _, _ = await _make_orchestrator()
        result = await orchestrator.process_task(_make_request(), _make_tenant())
        await orchestrator.execute_task(result.task.id)

        with pytest.raises(ValidationError):
            await orchestrator.execute_task(result.task.id)

    @pytest.mark.asyncio
    async def test_drain_execution_queue(self):
        orchestrator, tasks, jobs = await _make_orchestrator()
        first = await orchestrator.process_task(_make_request(), _make_tenant())
        second = await orchestrator.process_task(_make_request(), _make_tenant())
        jobs.add_job(EXECUTION_QUEUE, "execute-task", {"task_id": "task_missing"})

        handled = await orchestrator.drain_execution_queue()

        assert handled == 3
        assert (await tasks.get(first.task.id)).status == TaskStatus.COMPLETED
        assert (await tasks.get(second.task.id)).status == TaskStatus.COMPLETED
        assert jobs.size(EXECUTION_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_worker_stops_on_event(self):
        orchestrator, tasks, _ = await _make_orchestrator(
            config=OrchestratorConfig(worker_poll_seconds=0.01),
        )
        result = await orchestrator.process_task(_make_request(), _make_tenant())
        stop = asyncio.Event()

        worker = asyncio.create_task(orchestrator.run_execution_worker(stop))
        await asyncio.sleep(0.05)
        assert orchestrator.is_running
        stop.set()
        await asyncio.wait_for(worker, timeout=1)

        assert not orchestrator.is_running
        assert (await tasks.get(result.task.id)).status == TaskStatus.COMPLETED


class TestAutoApprovalCounter:
    @pytest.mark.asyncio
    async def test_cap_per_tenant(self):
        counter = AutoApprovalCounter()
        assert await counter.try_acquire("a", 1)
        assert not await counter.try_acquire("a", 1)
        assert await counter.try_acquire("b", 1)

    @pytest.mark.asyncio
    async def test_new_day_starts_fresh(self):
        days = [date(2026, 3, 1)]
        counter = AutoApprovalCounter(today=lambda: days[0])
        assert await counter.try_acquire("a", 1)
        assert not await counter.try_acquire("a", 1)

        days[0] = date(2026, 3, 2)

        assert await counter.try_acquire("a", 1)
        assert await counter.get("a", date(2026, 3, 1)) == 0

    @pytest.mark.asyncio
    async def test_release(self):
        counter = AutoApprovalCounter()
        await counter.try_acquire("a", 5)
        await counter.release("a")
        assert await counter.get("a") == 0
        await counter.release("a")
        assert await counter.get("a") == 0

    @pytest.mark.asyncio
    async def test_concurrent_acquire(self):
        counter = AutoApprovalCounter()
        granted = await asyncio.gather(*(counter.try_acquire("a", 4) for _ in range(20)))
        assert sum(granted) == 4
