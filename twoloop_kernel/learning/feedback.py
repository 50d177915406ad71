"""
Feedback Processor — operator feedback toward policy changes.

Consumes the feedback jobs the Approval Queue produces and turns them into
proposals a human reviews.

The rule: feedback never changes a policy by itself.
- A proposal only becomes a DRAFT when a reviewer approves it and supplies
  the new content; the draft is authored by TELEOPERATOR
- Activating the draft is a separate human step on the Policy Store
- Criteria are reachable only through this path
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from twoloop_kernel.errors import NotFoundError, ValidationError
from twoloop_kernel.jobs.queue import FEEDBACK_QUEUE, JobQueue
from twoloop_kernel.log import get_logger
from twoloop_kernel.models.feedback import FeedbackProposal
from twoloop_kernel.models.policy import Author, PolicyKind
from twoloop_kernel.policy.store import CriteriaStore, GuidelinesStore

logger = get_logger("feedback")

_JOB_TARGETS = {
    "guidelines-feedback": PolicyKind.GUIDELINES,
    "criteria-feedback": PolicyKind.CRITERIA,
}


class FeedbackProcessor:
    """Holds feedback proposals and applies reviewed ones as drafts."""

    def __init__(
        self,
        jobs: JobQueue,
        guidelines_store: GuidelinesStore,
        criteria_store: CriteriaStore,
    ):
        self.jobs = jobs
        self._stores = {
            PolicyKind.GUIDELINES: guidelines_store,
            PolicyKind.CRITERIA: criteria_store,
        }
        self._proposals: Dict[str, FeedbackProposal] = {}

    def process_pending_jobs(self) -> List[FeedbackProposal]:
        """Drain the feedback queue into proposals."""
        created = []
        for job in self.jobs.drain(FEEDBACK_QUEUE):
            target = _JOB_TARGETS.get(job.name)
            if target is None:
                logger.warning(
                    "unknown feedback job",
                    extra={"structured": {"job_id": job.id, "job": job.name}},
                )
                continue

            payload = job.payload
            proposal = FeedbackProposal(
                id=f"fbp_{uuid4().hex[:12]}",
                tenant_id=payload["tenant_id"],
                target=target,
                task_id=payload["task_id"],
                feedback=payload.get("feedback", ""),
                submitted_by=payload.get("teleoperator_id", "unknown"),
                created_at=datetime.utcnow(),
            )
            self._proposals[proposal.id] = proposal
            created.append(proposal)

        if created:
            logger.info("feedback proposals created", extra={"structured": {"count": len(created)}})
        return created

    def get_proposal(self, proposal_id: str) -> FeedbackProposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise NotFoundError(f"Feedback proposal {proposal_id} not found")
        return proposal

    def get_pending_proposals(self, tenant_id: Optional[str] = None) -> List[FeedbackProposal]:
        return [
            p for p in self._proposals.values()
            if p.status == "pending_review" and (tenant_id is None or p.tenant_id == tenant_id)
        ]

    def get_all_proposals(self) -> List[FeedbackProposal]:
        return list(self._proposals.values())

    async def approve_proposal(
        self,
        proposal_id: str,
        reviewer: str,
        content: Dict[str, Any],
    ) -> FeedbackProposal:
        """
        Accept a proposal by storing ``content`` as a new DRAFT of its target policy.

        The draft is not activated.
        """
        proposal = self._require_pending(proposal_id)
        store = self._stores[proposal.target]
        draft_id = await store.create_draft(
            proposal.tenant_id,
            content,
            Author.TELEOPERATOR,
            changelog=(
                f"Operator feedback on task {proposal.task_id} "
                f"(reviewed by {reviewer}): {proposal.feedback}"
            ),
        )

        proposal.status = "approved"
        proposal.draft_version_id = draft_id
        proposal.reviewed_by = reviewer
        proposal.reviewed_at = datetime.utcnow()
        logger.info(
            "feedback proposal approved",
            extra={"structured": {
                "proposal_id": proposal.id,
                "target": proposal.target.value,
                "draft_version_id": draft_id,
            }},
        )
        return proposal

    def reject_proposal(self, proposal_id: str, reviewer: str) -> FeedbackProposal:
        proposal = self._require_pending(proposal_id)
        proposal.status = "rejected"
        proposal.reviewed_by = reviewer
        proposal.reviewed_at = datetime.utcnow()
        return proposal

    def _require_pending(self, proposal_id: str) -> FeedbackProposal:
        proposal = self.get_proposal(proposal_id)
        if proposal.status != "pending_review":
            raise ValidationError(f"Feedback proposal {proposal_id} is already {proposal.status}")
        return proposal
