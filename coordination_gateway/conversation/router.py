# coordination_gateway/conversation/router.py
"""
Message Router

Validates and records messages, then interprets the routing rules that
match them. Rules are plain data (see models.RoutingRule); ``apply_action``
is the single place that knows what each action variant does.
"""

import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field

from ..errors import InvalidTransitionError, MessageValidationError
from ..models import (
    TRANSITIONS,
    BroadcastAction,
    Conversation,
    ConversationState,
    EscalateAction,
    Message,
    MessageDraft,
    MessageType,
    RemindAction,
    RouteAction,
    RoutingRule,
    new_id,
)
from .manager import ConversationManager
from .rules import PROTECTED_RULES, default_rules


class RoutingResult(BaseModel):
    message_id: str
    conversation_id: str
    recipients: List[str]
    rules_applied: List[str] = Field(default_factory=list)
    escalated: bool = False
    broadcast: bool = False
    reminder_scheduled: bool = False
    state: ConversationState


class _Outcome:
    """Side effects accumulated while the rules run for one message."""

    def __init__(self, recipients: List[str]):
        self.recipients = list(recipients)
        self.escalated = False
        self.broadcast = False
        self.reminder_delay: Optional[float] = None

    def add(self, agent_ids):
        for agent_id in agent_ids:
            if agent_id not in self.recipients:
                self.recipients.append(agent_id)


class MessageRouter:
    def __init__(
        self,
        manager: ConversationManager,
        rules: Optional[List[RoutingRule]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.manager = manager
        self.clock = clock
        self._rules: Dict[str, RoutingRule] = {rule.rule_id: rule for rule in default_rules()}
        self._queues: Dict[str, Dict[str, Deque[Message]]] = defaultdict(lambda: defaultdict(deque))
        for rule in rules or ():
            self.add_rule(rule)
        manager.on_archive(self.forget)

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    def add_rule(self, rule: Union[RoutingRule, Dict[str, Any]]) -> RoutingRule:
        if not isinstance(rule, RoutingRule):
            rule = RoutingRule.model_validate(rule)
        self._check_unprotected(rule.rule_id, "replaced")
        self._rules[rule.rule_id] = rule
        logger.debug(f"📐 Routing rule '{rule.name}' ({rule.rule_id}) registered at priority {rule.priority}")
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        self._check_unprotected(rule_id, "removed")
        return self._rules.pop(rule_id, None) is not None

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> RoutingRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise MessageValidationError(f"Unknown routing rule: {rule_id}", rule_id=rule_id)
        if not enabled:
            self._check_unprotected(rule_id, "disabled")
        rule.enabled = enabled
        return rule

    @staticmethod
    def _check_unprotected(rule_id: str, change: str) -> None:
        if rule_id in PROTECTED_RULES:
            raise MessageValidationError(f"Built-in rule {rule_id} cannot be {change}", rule_id=rule_id)

    def list_rules(self) -> List[RoutingRule]:
        return sorted(self._rules.values(), key=lambda r: r.priority, reverse=True)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _validate(self, draft: MessageDraft) -> None:
        problems = []
        if not draft.conversation_id:
            problems.append("conversation_id is required")
        if not draft.sender_id:
            problems.append("sender_id is required")
        if draft.message_type is None:
            problems.append("message_type is required")
        if problems:
            raise MessageValidationError("; ".join(problems), problems=problems)

    async def route(self, draft: Union[MessageDraft, Dict[str, Any]]) -> RoutingResult:
        if not isinstance(draft, MessageDraft):
            draft = MessageDraft.model_validate(draft)
        self._validate(draft)
        conversation = self.manager.get(draft.conversation_id)

        async with self.manager.lock(draft.conversation_id):
            if conversation.state == ConversationState.COMPLETED:
                raise InvalidTransitionError(
                    f"Conversation {conversation.conversation_id} is completed",
                    conversation_id=conversation.conversation_id,
                )
            if conversation.participant(draft.sender_id) is None:
                raise MessageValidationError(
                    f"Sender {draft.sender_id} is not a participant",
                    conversation_id=conversation.conversation_id,
                )
            unknown = [r for r in draft.recipients if conversation.participant(r) is None]
            if unknown:
                raise MessageValidationError(f"Unknown recipients: {', '.join(unknown)}", recipients=unknown)

            if conversation.state == ConversationState.PAUSED:
                # New traffic ends the pause
                self.manager.transition(conversation, ConversationState.ACTIVE)

            recipients = draft.recipients or [a for a in conversation.participant_ids if a != draft.sender_id]
            outcome = _Outcome(recipients)
            applied = []
            for rule in self.list_rules():
                if rule.enabled and rule.condition.matches(draft, conversation):
                    self.apply_action(rule, draft, conversation, outcome)
                    applied.append(rule.name)

            now = self.clock()
            message = Message(
                message_id=new_id("msg"),
                conversation_id=conversation.conversation_id,
                sender_id=draft.sender_id,
                recipients=tuple(outcome.recipients),
                message_type=draft.message_type,
                urgency=draft.urgency,
                payload=draft.payload,
                requires_response=draft.requires_response or outcome.reminder_delay is not None,
                response_deadline=self._deadline(draft, conversation, outcome, now),
                in_reply_to=draft.in_reply_to,
                timestamp=now,
            )
            conversation.history.append(message)
            conversation.last_activity = now
            if message.response_deadline is not None:
                conversation.pending_responses[message.message_id] = message.response_deadline
            if message.message_type == MessageType.RESPONSE and message.in_reply_to:
                conversation.pending_responses.pop(message.in_reply_to, None)
            for recipient in message.recipients:
                self._queues[conversation.conversation_id][recipient].append(message)

        logger.debug(
            f"📨 {message.message_type.value} {message.message_id} from {message.sender_id} "
            f"to {len(message.recipients)} recipients, rules={applied}"
        )
        return RoutingResult(
            message_id=message.message_id,
            conversation_id=conversation.conversation_id,
            recipients=list(message.recipients),
            rules_applied=applied,
            escalated=outcome.escalated,
            broadcast=outcome.broadcast,
            reminder_scheduled=outcome.reminder_delay is not None,
            state=conversation.state,
        )

    @staticmethod
    def _deadline(draft: MessageDraft, conversation: Conversation, outcome: _Outcome, now: float) -> Optional[float]:
        if draft.response_deadline is not None:
            return draft.response_deadline
        if outcome.reminder_delay is not None:
            return now + outcome.reminder_delay
        if draft.requires_response:
            return now + conversation.timeouts.response
        return None

    def apply_action(self, rule: RoutingRule, draft: MessageDraft, conversation: Conversation, outcome: _Outcome) -> None:
        action = rule.action
        if isinstance(action, RouteAction):
            targets = [a for a in action.to_agents if conversation.participant(a) is not None]
            targets += [p.agent_id for p in conversation.participants if p.role in action.to_roles]
            outcome.add(a for a in targets if a != draft.sender_id)
        elif isinstance(action, BroadcastAction):
            outcome.broadcast = True
            outcome.add(a for a in conversation.participant_ids if a != draft.sender_id)
            target = action.update_state
            if target is not None and target != conversation.state:
                if target in TRANSITIONS[conversation.state]:
                    self.manager.transition(conversation, target)
                else:
                    logger.warning(f"⚠️ Rule '{rule.name}' cannot move {conversation.state.value} to {target.value}")
        elif isinstance(action, EscalateAction):
            outcome.escalated = True
            outcome.add(p.agent_id for p in conversation.participants if p.role == action.escalate_to)
            if action.notify_all:
                outcome.add(conversation.participant_ids)
            outcome.recipients = [a for a in outcome.recipients if a != draft.sender_id]
            logger.info(f"📣 {draft.urgency.value} message in {conversation.conversation_id} escalated to {action.escalate_to.value}")
        elif isinstance(action, RemindAction):
            outcome.reminder_delay = action.delay if action.delay is not None else conversation.timeouts.response
        else:
            raise TypeError(f"Unhandled rule action: {action!r}")

    def drain(self, conversation_id: str, agent_id: str) -> List[Message]:
        """Hand over and clear everything queued for one recipient."""
        self.manager.get(conversation_id)
        queue = self._queues.get(conversation_id, {}).get(agent_id)
        if not queue:
            return []
        messages = list(queue)
        queue.clear()
        return messages

    def forget(self, conversation_id: str) -> None:
        """Drop the queues of an archived conversation."""
        self._queues.pop(conversation_id, None)

    def pending(self, conversation_id: str) -> Dict[str, int]:
        return {agent: len(queue) for agent, queue in self._queues.get(conversation_id, {}).items()}
