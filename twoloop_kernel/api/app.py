"""
Two-Loop Kernel API — FastAPI endpoints.

Exposes the kernel to operators and integrations:
- Task processing and execution
- Approval queue views, assignment and decisions
- Guidelines / Criteria versions
- Convergence Run audit records
- Feedback proposals
- Escalation trigger management
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from twoloop_kernel.approval.queue import ApprovalQueue
from twoloop_kernel.audit.run_ledger import RunLedger
from twoloop_kernel.config import KernelSettings
from twoloop_kernel.convergence.engine import ConvergenceEngine
from twoloop_kernel.errors import ConflictError, ExecutionError, NotFoundError, ValidationError
from twoloop_kernel.escalation.decider import EscalationDecider
from twoloop_kernel.evaluation.evaluator import RubricEvaluator
from twoloop_kernel.execution.registry import ExecutorRegistry
from twoloop_kernel.jobs.queue import JobQueue, QueueNotifier
from twoloop_kernel.learning.feedback import FeedbackProcessor
from twoloop_kernel.log import configure_logging
from twoloop_kernel.models.approval import ApprovalDecision, DecisionType, QueueFilter
from twoloop_kernel.models.escalation import EscalationTrigger
from twoloop_kernel.models.orchestration import TaskRequest
from twoloop_kernel.models.policy import Author, PolicyKind
from twoloop_kernel.models.task import EscalationReason, Priority, TaskType
from twoloop_kernel.models.tenant import TenantConfig
from twoloop_kernel.oracle.base import GenerationOracle
from twoloop_kernel.oracle.scripted import ScriptedOracle
from twoloop_kernel.orchestrator.orchestrator import TaskOrchestrator
from twoloop_kernel.policy.store import CriteriaStore, GuidelinesStore
from twoloop_kernel.tasks.registry import TaskTypeRegistry
from twoloop_kernel.tasks.repository import TaskRepository


# --- Request/Response Models ---

class BatchTaskRequest(BaseModel):
    tenant_id: str
    requests: List[TaskRequest]


class AssignRequest(BaseModel):
    operator_id: str


class AutoAssignRequest(BaseModel):
    tenant_id: str
    operators: List[str]
    max_per_operator: int = 10


class DecisionRequest(BaseModel):
    decision: DecisionType
    teleoperator_id: str
    edited_content: Optional[Dict[str, Any]] = None
    rejection_reason: Optional[str] = None
    feedback: Optional[str] = None
    suggest_guidelines_update: bool = False
    suggest_criteria_update: bool = False


class BatchDecisionRequest(BaseModel):
    task_ids: List[str]
    teleoperator_id: str
    reason: Optional[str] = None


class DraftCreateRequest(BaseModel):
    content: Dict[str, Any]
    changelog: str = ""


class ActivateRequest(BaseModel):
    expected_active_version: Optional[int] = None


class VersionRejectRequest(BaseModel):
    reason: str = ""


class ProposalApproveRequest(BaseModel):
    reviewer: str
    content: Dict[str, Any]


class ProposalReviewRequest(BaseModel):
    reviewer: str


class TriggerToggleRequest(BaseModel):
    enabled: bool


# --- Application Factory ---

def create_app(
    settings: Optional[KernelSettings] = None,
    oracle: Optional[GenerationOracle] = None,
    guidelines_store: Optional[GuidelinesStore] = None,
    criteria_store: Optional[CriteriaStore] = None,
    run_ledger: Optional[RunLedger] = None,
    decider: Optional[EscalationDecider] = None,
    executors: Optional[ExecutorRegistry] = None,
    tenants: Optional[Dict[str, TenantConfig]] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or KernelSettings()
    configure_logging(settings.logging.level, json_format=settings.logging.json_format)

    app = FastAPI(
        title="Two-Loop Kernel API",
        description="Recruiting task control core: convergence, escalation and approval",
        version="0.1.0",
    )

    # Initialize components
    task_types = TaskTypeRegistry.default()
    gs = guidelines_store or GuidelinesStore()
    cs = criteria_store or CriteriaStore()
    rl = run_ledger or RunLedger(settings.ledger_path)
    ora = oracle or ScriptedOracle()
    jobs = JobQueue()
    notifier = QueueNotifier(jobs)
    tasks = TaskRepository()
    dec = decider or EscalationDecider()
    tenant_configs: Dict[str, TenantConfig] = dict(tenants or {})

    engine = ConvergenceEngine(
        oracle=ora,
        guidelines_store=gs,
        criteria_store=cs,
        evaluator=RubricEvaluator(ora, config=settings.evaluator, task_types=task_types),
        ledger=rl,
        task_types=task_types,
        sensitive_task_types=settings.sensitive_task_types,
    )
    orchestrator = TaskOrchestrator(
        engine=engine,
        decider=dec,
        tasks=tasks,
        jobs=jobs,
        notifier=notifier,
        executors=executors or ExecutorRegistry(),
        task_types=task_types,
        config=settings.orchestrator,
        run_config=settings.engine,
    )
    approval_queue = ApprovalQueue(tasks, jobs, notifier=notifier, ledger=rl)
    feedback = FeedbackProcessor(jobs, gs, cs)
    stores = {PolicyKind.GUIDELINES: gs, PolicyKind.CRITERIA: cs}

    # Store components on app state for access in endpoints
    app.state.settings = settings
    app.state.guidelines_store = gs
    app.state.criteria_store = cs
    app.state.run_ledger = rl
    app.state.jobs = jobs
    app.state.tasks = tasks
    app.state.decider = dec
    app.state.engine = engine
    app.state.orchestrator = orchestrator
    app.state.approval_queue = approval_queue
    app.state.feedback = feedback
    app.state.tenants = tenant_configs

    def tenant_config(tenant_id: str) -> TenantConfig:
        return tenant_configs.get(tenant_id) or TenantConfig(tenant_id=tenant_id)

    # === ERROR MAPPING ===

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # === TENANTS ===

    @app.put("/tenants/{tenant_id}")
    def put_tenant(tenant_id: str, config: TenantConfig):
        """Register or replace a tenant's autonomy configuration."""
        if config.tenant_id != tenant_id:
            raise HTTPException(422, "tenant_id in body does not match path")
        tenant_configs[tenant_id] = config
        return config.model_dump(mode="json")

    @app.get("/tenants/{tenant_id}")
    def get_tenant(tenant_id: str):
        return tenant_config(tenant_id).model_dump(mode="json")

    # === TASKS ===

    @app.post("/tasks")
    async def process_task(req: TaskRequest):
        """Converge and route one task."""
        result = await orchestrator.process_task(req, tenant_config(req.tenant_id))
        return result.model_dump(mode="json")

    @app.post("/tasks/batch")
    async def process_batch(req: BatchTaskRequest):
        """Requests addressed to another tenant are reported under ``failed``."""
        result = await orchestrator.process_batch(req.requests, tenant_config(req.tenant_id))
        return result.model_dump(mode="json")

    @app.post("/tasks/execute-queued")
    async def execute_queued():
        """Run every task waiting on the execution queue."""
        return {"handled": await orchestrator.drain_execution_queue()}

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str):
        task = await tasks.get(task_id)
        return task.model_dump(mode="json")

    @app.post("/tasks/{task_id}/execute")
    async def execute_task(task_id: str):
        """Execute an APPROVED task. Failures are reported on the task."""
        try:
            task = await orchestrator.execute_task(task_id)
        except ExecutionError:
            task = await tasks.get(task_id)
        return task.model_dump(mode="json")

    # === APPROVAL QUEUE ===

    @app.get("/queue")
    async def get_queue(
        tenant_id: Optional[str] = None,
        task_type: Optional[TaskType] = None,
        priority: Optional[Priority] = None,
        escalation_reason: Optional[EscalationReason] = None,
        assigned_to: Optional[str] = None,
        unassigned_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ):
        """Pending tasks, most urgent first."""
        queue_filter = QueueFilter(
            tenant_id=tenant_id,
            types=[task_type] if task_type else [],
            priorities=[priority] if priority else [],
            escalation_reasons=[escalation_reason] if escalation_reason else [],
            assigned_to=assigned_to,
            unassigned_only=unassigned_only,
            limit=limit,
            offset=offset,
        )
        pending = await approval_queue.get_pending(queue_filter)
        return [q.model_dump(mode="json") for q in pending]

    @app.get("/queue/stats")
    async def get_queue_stats(tenant_id: Optional[str] = None):
        stats = await approval_queue.get_stats(tenant_id)
        return stats.model_dump(mode="json")

    @app.post("/queue/auto-assign")
    async def auto_assign(req: AutoAssignRequest):
        return await approval_queue.auto_assign(req.tenant_id, req.operators, req.max_per_operator)

    @app.post("/queue/batch/approve")
    async def batch_approve(req: BatchDecisionRequest):
        result = await approval_queue.batch_approve(req.task_ids, req.teleoperator_id)
        return result.model_dump(mode="json")

    @app.post("/queue/batch/reject")
    async def batch_reject(req: BatchDecisionRequest):
        result = await approval_queue.batch_reject(req.task_ids, req.teleoperator_id, req.reason)
        return result.model_dump(mode="json")

    @app.post("/queue/expire")
    async def expire_tasks():
        """Expire stale approvals (called by the external scheduler)."""
        return {"expired": await approval_queue.process_expired_tasks()}

    @app.get("/queue/{task_id}")
    async def get_queued_task(task_id: str):
        """A task with the Convergence Run that produced it."""
        queued = await approval_queue.get_task_with_context(task_id)
        return queued.model_dump(mode="json")

    @app.post("/queue/{task_id}/assign")
    async def assign_task(task_id: str, req: AssignRequest):
        task = await approval_queue.assign(task_id, req.operator_id)
        return task.model_dump(mode="json")

    @app.post("/queue/{task_id}/unassign")
    async def unassign_task(task_id: str):
        task = await approval_queue.unassign(task_id)
        return task.model_dump(mode="json")

    @app.post("/queue/{task_id}/decision")
    async def decide_task(task_id: str, req: DecisionRequest):
        """Operator approves, rejects or edits a task."""
        decision = ApprovalDecision(task_id=task_id, **req.model_dump())
        task = await approval_queue.process_decision(decision)
        return task.model_dump(mode="json")

    # === POLICIES ===

    @app.get("/policies/{kind}/{tenant_id}/active")
    async def get_active_policy(kind: PolicyKind, tenant_id: str):
        version = await stores[kind].get_active(tenant_id)
        return version.model_dump(mode="json")

    @app.get("/policies/{kind}/{tenant_id}/versions")
    async def list_policy_versions(kind: PolicyKind, tenant_id: str):
        versions = await stores[kind].list_versions(tenant_id)
        return [v.model_dump(mode="json") for v in versions]

    @app.get("/policies/{kind}/{tenant_id}/drafts")
    async def list_policy_drafts(kind: PolicyKind, tenant_id: str):
        drafts = await stores[kind].get_pending_drafts(tenant_id)
        return [v.model_dump(mode="json") for v in drafts]

    @app.post("/policies/{kind}/{tenant_id}/drafts")
    async def create_policy_draft(kind: PolicyKind, tenant_id: str, req: DraftCreateRequest):
        """Operator-authored draft."""
        version_id = await stores[kind].create_draft(
            tenant_id, req.content, Author.TELEOPERATOR, changelog=req.changelog
        )
        version = await stores[kind].get_by_id(version_id)
        return version.model_dump(mode="json")

    @app.get("/policies/{kind}/{tenant_id}/compare")
    async def compare_policy_versions(kind: PolicyKind, tenant_id: str, from_version: int, to_version: int):
        diff = await stores[kind].compare(tenant_id, from_version, to_version)
        return diff.model_dump(mode="json")

    @app.post("/policies/{kind}/versions/{version_id}/activate")
    async def activate_policy_version(kind: PolicyKind, version_id: str, req: ActivateRequest):
        version = await stores[kind].activate(
            version_id,
            actor=Author.TELEOPERATOR,
            expected_active_version=req.expected_active_version,
        )
        return version.model_dump(mode="json")

    @app.post("/policies/{kind}/versions/{version_id}/reject")
    async def reject_policy_version(kind: PolicyKind, version_id: str, req: VersionRejectRequest):
        version = await stores[kind].reject(version_id, actor=Author.TELEOPERATOR, reason=req.reason)
        return version.model_dump(mode="json")

    # === CONVERGENCE RUNS ===

    @app.get("/runs")
    def get_runs(tenant_id: Optional[str] = None, limit: int = 50):
        """Recent Convergence Runs."""
        records = rl.query_by_tenant(tenant_id) if tenant_id else rl.query_recent(limit=limit)
        return [r.model_dump(mode="json") for r in records]

    @app.get("/runs/verify")
    def verify_runs():
        """Verify chain integrity."""
        return {
            "integrity_valid": rl.verify_chain_integrity(),
            "total_records": rl.count(),
        }

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        record = rl.get(run_id)
        if not record:
            raise HTTPException(404, "Run not found")
        return record.model_dump(mode="json")

    # === FEEDBACK ===

    @app.post("/feedback/process")
    def process_feedback():
        """Turn queued operator feedback into proposals."""
        created = feedback.process_pending_jobs()
        return [p.model_dump(mode="json") for p in created]

    @app.get("/feedback/proposals")
    def get_feedback_proposals(pending_only: bool = False):
        proposals = feedback.get_pending_proposals() if pending_only else feedback.get_all_proposals()
        return [p.model_dump(mode="json") for p in proposals]

    @app.post("/feedback/proposals/{proposal_id}/approve")
    async def approve_feedback_proposal(proposal_id: str, req: ProposalApproveRequest):
        """Reviewer accepts feedback; the new content is stored as a draft."""
        proposal = await feedback.approve_proposal(proposal_id, req.reviewer, req.content)
        return proposal.model_dump(mode="json")

    @app.post("/feedback/proposals/{proposal_id}/reject")
    def reject_feedback_proposal(proposal_id: str, req: ProposalReviewRequest):
        proposal = feedback.reject_proposal(proposal_id, req.reviewer)
        return proposal.model_dump(mode="json")

    # === ESCALATION TRIGGERS ===

    @app.get("/escalation/triggers")
    def get_triggers():
        return [t.model_dump(mode="json") for t in dec.get_triggers()]

    @app.put("/escalation/triggers")
    def put_trigger(trigger: EscalationTrigger):
        """Add a trigger or replace one with the same id."""
        dec.add_trigger(trigger)
        return trigger.model_dump(mode="json")

    @app.post("/escalation/triggers/{trigger_id}/enabled")
    def toggle_trigger(trigger_id: str, req: TriggerToggleRequest):
        trigger = dec.set_trigger_enabled(trigger_id, req.enabled)
        return trigger.model_dump(mode="json")

    @app.delete("/escalation/triggers/{trigger_id}")
    def delete_trigger(trigger_id: str):
        dec.remove_trigger(trigger_id)
        return {"status": "removed", "trigger_id": trigger_id}

    return app


# Default application instance
app = create_app()
