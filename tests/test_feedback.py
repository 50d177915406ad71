"""Tests for the operator feedback path into policy drafts."""

import pytest

from twoloop_kernel.errors import NotFoundError, ValidationError
from twoloop_kernel.jobs.queue import FEEDBACK_QUEUE, JobQueue
from twoloop_kernel.learning.feedback import FeedbackProcessor
from twoloop_kernel.models.policy import Author, PolicyKind, VersionStatus
from twoloop_kernel.policy.store import CriteriaStore, GuidelinesStore

TENANT = "tenant_a"

CRITERIA = {
    "quality_standards": [{"id": "qs_1", "name": "Personalized", "domain": "outreach"}],
}

TIGHTER_CRITERIA = {
    "quality_standards": [
        {"id": "qs_1", "name": "Personalized", "domain": "outreach"},
        {"id": "qs_2", "name": "Under 80 words", "domain": "outreach"},
    ],
}


def _make_job_payload(**overrides) -> dict:
    payload = {
        "task_id": "task_1",
        "tenant_id": TENANT,
        "task_type": "SEND_EMAIL",
        "decision": "reject",
        "feedback": "Keep outreach under 80 words",
        "teleoperator_id": "op_1",
    }
    payload.update(overrides)
    return payload


async def _make_processor():
    jobs = JobQueue()
    guidelines = GuidelinesStore()
    criteria = CriteriaStore()
    await guidelines.bootstrap(TENANT, {"templates": []})
    await criteria.bootstrap(TENANT, CRITERIA)
    return FeedbackProcessor(jobs, guidelines, criteria), jobs, guidelines, criteria


class TestProposals:
    @pytest.mark.asyncio
    async def test_jobs_become_proposals(self):
        processor, jobs, _, _ = await _make_processor()
        jobs.add_job(FEEDBACK_QUEUE, "guidelines-feedback", _make_job_payload())
        jobs.add_job(FEEDBACK_QUEUE, "criteria-feedback", _make_job_payload())
        jobs.add_job(FEEDBACK_QUEUE, "mystery-feedback", _make_job_payload())

        created = processor.process_pending_jobs()

        assert [p.target for p in created] == [PolicyKind.GUIDELINES, PolicyKind.CRITERIA]
        assert created[0].submitted_by == "op_1"
        assert jobs.size(FEEDBACK_QUEUE) == 0
        assert len(processor.get_pending_proposals(TENANT)) == 2
        assert processor.get_pending_proposals("tenant_other") == []

    @pytest.mark.asyncio
    async def test_unknown_proposal(self):
        processor, _, _, _ = await _make_processor()
        with pytest.raises(NotFoundError):
            processor.get_proposal("fbp_missing")


class TestReview:
    @pytest.mark.asyncio
    async def test_approved_criteria_feedback_is_a_human_draft(self):
        processor, jobs, _, criteria = await _make_processor()
        jobs.add_job(FEEDBACK_QUEUE, "criteria-feedback", _make_job_payload())
        proposal = processor.process_pending_jobs()[0]

        approved = await processor.approve_proposal(proposal.id, "lead_1", TIGHTER_CRITERIA)

        assert approved.status == "approved"
        assert approved.reviewed_by == "lead_1"
        draft = await criteria.get_by_id(approved.draft_version_id)
        assert draft.status == VersionStatus.DRAFT
        assert draft.created_by == Author.TELEOPERATOR
        assert "Keep outreach under 80 words" in draft.changelog
        # Not activated until a human does so on the store
        assert (await criteria.get_active(TENANT)).version == 1

    @pytest.mark.asyncio
    async def test_approved_guidelines_feedback(self):
        processor, jobs, guidelines, _ = await _make_processor()
        jobs.add_job(FEEDBACK_QUEUE, "guidelines-feedback", _make_job_payload())
        proposal = processor.process_pending_jobs()[0]

        approved = await processor.approve_proposal(proposal.id, "lead_1", {"templates": []})

        drafts = await guidelines.get_pending_drafts(TENANT)
        assert [d.id for d in drafts] == [approved.draft_version_id]

    @pytest.mark.asyncio
    async def test_reject(self):
        processor, jobs, _, criteria = await _make_processor()
        jobs.add_job(FEEDBACK_QUEUE, "criteria-feedback", _make_job_payload())
        proposal = processor.process_pending_jobs()[0]

        rejected = processor.reject_proposal(proposal.id, "lead_1")

        assert rejected.status == "rejected"
        assert processor.get_pending_proposals() == []
        assert await criteria.get_pending_drafts(TENANT) == []

    @pytest.mark.asyncio
    async def test_cannot_decide_twice(self):
        processor, jobs, _, _ = await _make_processor()
        jobs.add_job(FEEDBACK_QUEUE, "criteria-feedback", _make_job_payload())
        proposal = processor.process_pending_jobs()[0]
        await processor.approve_proposal(proposal.id, "lead_1", TIGHTER_CRITERIA)

        with pytest.raises(ValidationError):
            await processor.approve_proposal(proposal.id, "lead_1", TIGHTER_CRITERIA)
        with pytest.raises(ValidationError):
            processor.reject_proposal(proposal.id, "lead_1")
