"""Tests for the Escalation Decider."""

from datetime import datetime

import pytest

from twoloop_kernel.errors import NotFoundError
from twoloop_kernel.escalation.decider import EscalationDecider, default_triggers
from twoloop_kernel.models.escalation import (
    ContentCondition,
    CustomCondition,
    EscalationContext,
    EscalationTrigger,
    TaskTypeCondition,
    TriggerActivation,
)
from twoloop_kernel.models.task import EscalationReason, Priority, TaskType
from twoloop_kernel.models.tenant import (
    ActionOverride,
    AutonomyConfig,
    AutonomyLevel,
    TenantConfig,
)


def _make_context(
    task_type: TaskType = TaskType.SEND_EMAIL,
    content: str = "Hi Ada, your compiler work stood out.",
    confidence: float = 0.95,
    level: AutonomyLevel = AutonomyLevel.MODERATE,
    **kwargs,
) -> EscalationContext:
    return EscalationContext(
        task_type=task_type,
        tenant_config=TenantConfig(tenant_id="tenant_a", autonomy=AutonomyConfig(level=level)),
        content=content,
        confidence_score=confidence,
        **kwargs,
    )


def _make_trigger(trigger_id: str, condition, priority=Priority.LOW, channels=None, **kwargs):
    return EscalationTrigger(
        id=trigger_id,
        name=trigger_id.replace("-", " ").title(),
        condition=condition,
        reason=EscalationReason.POLICY_VIOLATION_RISK,
        priority=priority,
        channels=channels or ["dashboard"],
        **kwargs,
    )


class TestDefaultTriggers:
    def test_clean_context_passes(self):
        decision = EscalationDecider().evaluate(_make_context())
        assert not decision.should_escalate
        assert decision.reason is None
        assert decision.triggered_rules == []

    def test_low_confidence(self):
        decision = EscalationDecider().evaluate(_make_context(confidence=0.5))
        assert decision.should_escalate
        assert decision.reason == EscalationReason.LOW_CONFIDENCE
        assert decision.priority == Priority.MEDIUM
        assert decision.channels == ["dashboard"]

    def test_offer_tasks_always_escalate(self):
        decision = EscalationDecider().evaluate(_make_context(task_type=TaskType.SEND_OFFER))
        assert decision.reason == EscalationReason.OFFER_NEGOTIATION
        assert decision.priority == Priority.HIGH

    def test_budget_content(self):
        decision = EscalationDecider().evaluate(
            _make_context(content="The salary band for this role is flexible.")
        )
        assert decision.reason == EscalationReason.BUDGET_DISCUSSION
        assert set(decision.channels) == {"dashboard", "slack"}

    def test_vip_flag_case_insensitive(self):
        decision = EscalationDecider().evaluate(_make_context(candidate_flags=["VIP"]))
        assert decision.reason == EscalationReason.FIRST_CONTACT_VIP

    def test_missing_content_never_matches_content_rules(self):
        decision = EscalationDecider().evaluate(_make_context(content=None))
        assert not decision.should_escalate


class TestAggregation:
    def test_highest_priority_reason_wins(self):
        decision = EscalationDecider().evaluate(_make_context(
            content="Happy to discuss salary.",
            conversation_intent="complaint",
        ))
        assert decision.reason == EscalationReason.CANDIDATE_COMPLAINT
        assert decision.priority == Priority.URGENT
        assert set(decision.triggered_rules) == {"budget-discussion", "candidate-complaint"}
        assert decision.channels == ["dashboard", "slack", "email"]
        assert decision.message == (
            "Escalation required: Budget or compensation discussion, Candidate complaint"
        )

    def test_tie_broken_by_trigger_order(self):
        decision = EscalationDecider().evaluate(_make_context(
            task_type=TaskType.PREPARE_OFFER,
            content="Base salary attached.",
        ))
        # offer-tasks and budget-discussion are both HIGH; offer-tasks comes first
        assert decision.reason == EscalationReason.OFFER_NEGOTIATION
        assert decision.triggered_rules == ["offer-tasks", "budget-discussion"]

    @pytest.mark.parametrize("context", [
        _make_context(),
        _make_context(confidence=0.5),
        _make_context(content="lawsuit", candidate_flags=["referral"]),
        _make_context(task_type=TaskType.SEND_OFFER, conversation_intent="negative"),
    ])
    def test_adding_a_trigger_is_monotonic(self, context):
        decider = EscalationDecider()
        before = decider.evaluate(context)

        decider.add_trigger(_make_trigger(
            "catch-all",
            CustomCondition(evaluator="always"),
            channels=["pager"],
        ))
        after = decider.evaluate(context)

        assert after.should_escalate
        assert set(before.channels) <= set(after.channels)
        assert "pager" in after.channels
        if before.should_escalate:
            assert after.priority.rank >= before.priority.rank


class TestAutonomyOverrides:
    def test_conservative_tenant_short_circuits(self):
        decision = EscalationDecider().evaluate(_make_context(
            level=AutonomyLevel.CONSERVATIVE,
            conversation_intent="complaint",
        ))
        assert decision.triggered_rules == ["autonomy-conservative"]
        assert decision.reason == EscalationReason.MANUAL_REVIEW_REQUESTED
        assert decision.channels == ["dashboard"]

    def test_action_override(self):
        tenant = TenantConfig(
            tenant_id="tenant_a",
            autonomy=AutonomyConfig(action_overrides=[
                ActionOverride(task_type=TaskType.SYNC_CANDIDATE, requires_approval=True),
            ]),
        )
        context = EscalationContext(task_type=TaskType.SYNC_CANDIDATE, tenant_config=tenant)
        decision = EscalationDecider().evaluate(context)
        assert decision.triggered_rules == ["override-SYNC_CANDIDATE"]
        assert decision.priority == Priority.MEDIUM

    def test_override_not_requiring_approval_is_ignored(self):
        tenant = TenantConfig(
            tenant_id="tenant_a",
            autonomy=AutonomyConfig(action_overrides=[
                ActionOverride(task_type=TaskType.SYNC_CANDIDATE, requires_approval=False),
            ]),
        )
        context = EscalationContext(
            task_type=TaskType.SYNC_CANDIDATE, tenant_config=tenant, confidence_score=0.99,
        )
        assert not EscalationDecider().evaluate(context).should_escalate


class TestTriggerManagement:
    def test_disable_and_enable(self):
        decider = EscalationDecider()
        context = _make_context(confidence=0.5)

        decider.set_trigger_enabled("low-confidence", False)
        assert not decider.evaluate(context).should_escalate

        decider.set_trigger_enabled("low-confidence", True)
        assert decider.evaluate(context).should_escalate

    def test_remove_trigger(self):
        decider = EscalationDecider()
        decider.remove_trigger("offer-tasks")
        assert "offer-tasks" not in [t.id for t in decider.get_triggers()]
        with pytest.raises(NotFoundError):
            decider.remove_trigger("offer-tasks")

    def test_add_replaces_same_id(self):
        decider = EscalationDecider()
        count = len(decider.get_triggers())
        decider.add_trigger(_make_trigger("low-confidence", CustomCondition(evaluator="never")))
        assert len(decider.get_triggers()) == count
        assert not decider.evaluate(_make_context(confidence=0.1)).should_escalate

    def test_default_trigger_ids(self):
        ids = [t.id for t in default_triggers()]
        assert ids == [
            "offer-tasks",
            "low-confidence",
            "budget-discussion",
            "vip-candidate",
            "candidate-complaint",
            "sensitive-content",
        ]


class TestActivationWindows:
    def _make_decider(self, schedule: str) -> EscalationDecider:
        return EscalationDecider(triggers=[_make_trigger(
            "business-hours",
            TaskTypeCondition(task_types=[TaskType.SEND_EMAIL]),
            activation=TriggerActivation(always=False, schedule=schedule),
        )])

    def test_active_inside_window(self):
        decider = self._make_decider("* 9-17 * * 1-5")
        monday_morning = datetime(2026, 1, 5, 10, 30)
        assert decider.evaluate(_make_context(), current_time=monday_morning).should_escalate

    def test_inactive_outside_window(self):
        decider = self._make_decider("* 9-17 * * 1-5")
        sunday_morning = datetime(2026, 1, 4, 10, 30)
        monday_night = datetime(2026, 1, 5, 22, 0)
        assert not decider.evaluate(_make_context(), current_time=sunday_morning).should_escalate
        assert not decider.evaluate(_make_context(), current_time=monday_night).should_escalate

    def test_invalid_schedule_stays_off(self):
        decider = self._make_decider("not a cron")
        assert not decider.evaluate(_make_context()).should_escalate


class TestCustomPredicates:
    def test_registered_predicate(self):
        decider = EscalationDecider(
            triggers=[_make_trigger(
                "big-req",
                CustomCondition(evaluator="headcount_over", config={"min": 10}),
                priority=Priority.HIGH,
            )],
            custom_predicates={
                "headcount_over": lambda ctx, cfg: ctx.custom.get("headcount", 0) > cfg["min"],
            },
        )
        assert decider.evaluate(_make_context(custom={"headcount": 25})).should_escalate
        assert not decider.evaluate(_make_context(custom={"headcount": 2})).should_escalate

    def test_unknown_predicate_does_not_fire(self):
        decider = EscalationDecider(triggers=[
            _make_trigger("mystery", CustomCondition(evaluator="does_not_exist")),
        ])
        assert not decider.evaluate(_make_context()).should_escalate

    def test_content_condition_case_sensitive(self):
        decider = EscalationDecider(triggers=[
            _make_trigger("acronym", ContentCondition(patterns=["NDA"], case_sensitive=True)),
        ])
        assert decider.evaluate(_make_context(content="Please sign the NDA")).should_escalate
        assert not decider.evaluate(_make_context(content="agenda for today")).should_escalate
