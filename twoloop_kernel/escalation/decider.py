"""
Escalation Decider — declarative rules deciding whether a task waits for a human.

Behavioral Contract:
- Tenant autonomy overrides are checked first and short-circuit everything
- Otherwise every enabled, currently-active trigger is evaluated and ALL
  matches are collected
- The decision carries the highest-priority matched reason, the union of
  matched channels and the names of every matched trigger
- Adding a matching trigger can only turn "no" into "yes" and only add
  channels; it never removes either
"""

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from twoloop_kernel.errors import NotFoundError
from twoloop_kernel.log import get_logger
from twoloop_kernel.models.escalation import (
    CandidateFlagCondition,
    ConfidenceCondition,
    ConfidenceOperator,
    ContentCondition,
    ConversationIntentCondition,
    CustomCondition,
    EscalationContext,
    EscalationDecision,
    EscalationTrigger,
    TaskTypeCondition,
    TriggerActivation,
)
from twoloop_kernel.models.task import EscalationReason, Priority, TaskType
from twoloop_kernel.models.tenant import AutonomyLevel

logger = get_logger("escalation")

CustomPredicate = Callable[[EscalationContext, Dict[str, Any]], bool]


def _is_trigger_active(activation: TriggerActivation, current_time: datetime) -> bool:
    """A trigger with a schedule is live only when the cron expression matches."""
    if activation.always:
        return True
    if activation.schedule:
        try:
            return croniter.match(activation.schedule, current_time)
        except (ValueError, KeyError):
            # Invalid cron expression: the trigger stays off
            return False
    return False


def _check_task_type(condition: TaskTypeCondition, context: EscalationContext) -> bool:
    return context.task_type in condition.task_types


def _check_content(condition: ContentCondition, context: EscalationContext) -> bool:
    if not context.content:
        return False
    flags = 0 if condition.case_sensitive else re.IGNORECASE
    for pattern in condition.patterns:
        try:
            if re.search(pattern, context.content, flags):
                return True
        except re.error:
            logger.warning("invalid content pattern", extra={"structured": {"pattern": pattern}})
    return False


def _check_confidence(condition: ConfidenceCondition, context: EscalationContext) -> bool:
    if context.confidence_score is None:
        return False
    if condition.operator == ConfidenceOperator.BELOW:
        return context.confidence_score < condition.threshold
    return context.confidence_score > condition.threshold


def _check_candidate_flag(condition: CandidateFlagCondition, context: EscalationContext) -> bool:
    wanted = {f.lower() for f in condition.flags}
    return any(f.lower() in wanted for f in context.candidate_flags)


def _check_conversation_intent(
    condition: ConversationIntentCondition, context: EscalationContext
) -> bool:
    if not context.conversation_intent:
        return False
    return context.conversation_intent.lower() in {i.lower() for i in condition.intents}


# Condition kind -> check. CustomCondition is resolved through the
# predicate table held by the decider.
_CONDITION_CHECKS: Dict[str, Callable] = {
    "task_type": _check_task_type,
    "content": _check_content,
    "confidence": _check_confidence,
    "candidate_flag": _check_candidate_flag,
    "conversation_intent": _check_conversation_intent,
}


def _always(context: EscalationContext, config: Dict[str, Any]) -> bool:
    return True


def _never(context: EscalationContext, config: Dict[str, Any]) -> bool:
    return False


DEFAULT_CUSTOM_PREDICATES: Dict[str, CustomPredicate] = {
    "always": _always,
    "never": _never,
}


def default_triggers() -> List[EscalationTrigger]:
    """The trigger set every tenant starts with."""
    return [
        EscalationTrigger(
            id="offer-tasks",
            name="Offer-related tasks",
            description="All offer preparation and delivery goes to a human",
            condition=TaskTypeCondition(task_types=[TaskType.PREPARE_OFFER, TaskType.SEND_OFFER]),
            reason=EscalationReason.OFFER_NEGOTIATION,
            priority=Priority.HIGH,
            channels=["dashboard", "slack"],
        ),
        EscalationTrigger(
            id="low-confidence",
            name="Low confidence output",
            description="Generated output scored below 0.7",
            condition=ConfidenceCondition(threshold=0.7, operator=ConfidenceOperator.BELOW),
            reason=EscalationReason.LOW_CONFIDENCE,
            priority=Priority.MEDIUM,
            channels=["dashboard"],
        ),
        EscalationTrigger(
            id="budget-discussion",
            name="Budget or compensation discussion",
            description="Output mentions salary, compensation or budget",
            condition=ContentCondition(
                patterns=[r"salary", r"compensation", r"\bpay\b", r"budget", r"\boffer\b", r"\$\d+"],
            ),
            reason=EscalationReason.BUDGET_DISCUSSION,
            priority=Priority.HIGH,
            channels=["dashboard", "slack"],
        ),
        EscalationTrigger(
            id="vip-candidate",
            name="VIP candidate",
            description="Candidate flagged as VIP, executive or referral",
            condition=CandidateFlagCondition(flags=["vip", "executive", "referral"]),
            reason=EscalationReason.FIRST_CONTACT_VIP,
            priority=Priority.HIGH,
            channels=["dashboard"],
        ),
        EscalationTrigger(
            id="candidate-complaint",
            name="Candidate complaint",
            description="Conversation intent is a complaint or negative",
            condition=ConversationIntentCondition(intents=["complaint", "negative"]),
            reason=EscalationReason.CANDIDATE_COMPLAINT,
            priority=Priority.URGENT,
            channels=["dashboard", "slack", "email"],
        ),
        EscalationTrigger(
            id="sensitive-content",
            name="Sensitive content",
            description="Legal or HR-sensitive language",
            condition=ContentCondition(
                patterns=[r"termination", r"lawsuit", r"legal", r"harassment", r"discrimination"],
            ),
            reason=EscalationReason.SENSITIVE_COMMUNICATION,
            priority=Priority.URGENT,
            channels=["dashboard", "slack", "email"],
        ),
    ]


class EscalationDecider:
    """
    Evaluates escalation triggers for a task.

    Triggers are kept in insertion order; that order breaks priority ties.
    """

    def __init__(
        self,
        triggers: Optional[List[EscalationTrigger]] = None,
        custom_predicates: Optional[Dict[str, CustomPredicate]] = None,
    ):
        self._triggers: Dict[str, EscalationTrigger] = {}
        for trigger in (default_triggers() if triggers is None else triggers):
            self._triggers[trigger.id] = trigger
        self._custom: Dict[str, CustomPredicate] = dict(DEFAULT_CUSTOM_PREDICATES)
        if custom_predicates:
            self._custom.update(custom_predicates)

    # --- Trigger management ---

    def add_trigger(self, trigger: EscalationTrigger) -> None:
        """Add a trigger, replacing any existing trigger with the same id."""
        self._triggers[trigger.id] = trigger

    def remove_trigger(self, trigger_id: str) -> None:
        if self._triggers.pop(trigger_id, None) is None:
            raise NotFoundError(f"Trigger {trigger_id} not found")

    def set_trigger_enabled(self, trigger_id: str, enabled: bool) -> EscalationTrigger:
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            raise NotFoundError(f"Trigger {trigger_id} not found")
        trigger.enabled = enabled
        return trigger

    def get_triggers(self) -> List[EscalationTrigger]:
        return list(self._triggers.values())

    # --- Evaluation ---

    def evaluate(
        self,
        context: EscalationContext,
        current_time: Optional[datetime] = None,
    ) -> EscalationDecision:
        """Decide whether the task described by ``context`` must be held."""
        if current_time is None:
            current_time = datetime.utcnow()

        # 1. Tenant autonomy overrides
        override = self._check_autonomy_overrides(context)
        if override is not None:
            return override

        # 2. Collect every matching trigger
        matched: List[EscalationTrigger] = []
        for trigger in self._triggers.values():
            if not trigger.enabled:
                continue
            if not _is_trigger_active(trigger.activation, current_time):
                continue
            if self._matches(trigger, context):
                matched.append(trigger)

        # 3. Nothing fired
        if not matched:
            return EscalationDecision(should_escalate=False)

        # 4. Aggregate
        top = max(matched, key=lambda t: t.priority.rank)
        channels: List[str] = []
        for trigger in matched:
            for channel in trigger.channels:
                if channel not in channels:
                    channels.append(channel)

        decision = EscalationDecision(
            should_escalate=True,
            reason=top.reason,
            priority=top.priority,
            triggered_rules=[t.id for t in matched],
            channels=channels,
            message="Escalation required: " + ", ".join(t.name for t in matched),
        )
        logger.info(
            "escalation triggered",
            extra={"structured": {
                "task_type": context.task_type.value,
                "tenant_id": context.tenant_config.tenant_id,
                "triggers": decision.triggered_rules,
                "reason": decision.reason.value,
            }},
        )
        return decision

    def _check_autonomy_overrides(self, context: EscalationContext) -> Optional[EscalationDecision]:
        autonomy = context.tenant_config.autonomy

        if autonomy.level == AutonomyLevel.CONSERVATIVE:
            return EscalationDecision(
                should_escalate=True,
                reason=EscalationReason.MANUAL_REVIEW_REQUESTED,
                priority=Priority.MEDIUM,
                triggered_rules=["autonomy-conservative"],
                channels=["dashboard"],
                message="Tenant autonomy level requires manual review",
            )

        action_override = autonomy.override_for(context.task_type)
        if action_override is not None and action_override.requires_approval:
            return EscalationDecision(
                should_escalate=True,
                reason=EscalationReason.MANUAL_REVIEW_REQUESTED,
                priority=Priority.MEDIUM,
                triggered_rules=[f"override-{context.task_type.value}"],
                channels=["dashboard"],
                message=f"Tenant requires approval for {context.task_type.value}",
            )

        return None

    def _matches(self, trigger: EscalationTrigger, context: EscalationContext) -> bool:
        condition = trigger.condition
        if isinstance(condition, CustomCondition):
            predicate = self._custom.get(condition.evaluator)
            if predicate is None:
                logger.warning(
                    "unknown custom escalation predicate",
                    extra={"structured": {"trigger_id": trigger.id, "evaluator": condition.evaluator}},
                )
                return False
            return predicate(context, condition.config)

        return _CONDITION_CHECKS[condition.kind](condition, context)
