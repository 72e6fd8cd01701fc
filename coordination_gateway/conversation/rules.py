# coordination_gateway/conversation/rules.py
"""Routing rules installed on every new router."""

from typing import List

from ..models import (
    BroadcastAction,
    ConversationState,
    EscalateAction,
    MessageType,
    ParticipantRole,
    RemindAction,
    RoutingRule,
    RuleCondition,
    Urgency,
)


# Escalation and completion handling cannot be switched off or replaced
PROTECTED_RULES = frozenset({"high-priority-escalation", "completion-broadcast"})


def default_rules() -> List[RoutingRule]:
    return [
        RoutingRule(
            rule_id="high-priority-escalation",
            name="High Priority Escalation",
            condition=RuleCondition(urgency_levels=[Urgency.HIGH, Urgency.CRITICAL]),
            action=EscalateAction(escalate_to=ParticipantRole.PRIMARY, notify_all=True),
            priority=90,
        ),
        RoutingRule(
            rule_id="completion-broadcast",
            name="Completion Broadcast",
            condition=RuleCondition(message_types=[MessageType.COMPLETION]),
            action=BroadcastAction(update_state=ConversationState.COMPLETING),
            priority=80,
        ),
        RoutingRule(
            rule_id="response-reminder",
            name="Response Reminder",
            condition=RuleCondition(message_types=[MessageType.QUESTION]),
            action=RemindAction(),
            priority=70,
        ),
    ]
