import asyncio

import pytest
from pydantic import ValidationError

from coordination_gateway.errors import ConversationNotFoundError, InvalidTransitionError, MessageValidationError
from coordination_gateway.models import ConversationState, TimeoutSettings

TEAM = [
    {"agent_id": "lead", "role": "primary"},
    {"agent_id": "coder"},
    {"agent_id": "reviewer", "role": "observer"},
]


def start(runtime, **kwargs):
    async def scenario():
        result = await runtime.conversations.initiate("task-1", "lead", TEAM, **kwargs)
        return result.conversation_id

    return asyncio.run(scenario())


def route(runtime, **message):
    return asyncio.run(runtime.router.route(message))


def test_default_recipients_are_everyone_but_sender(runtime):
    cid = start(runtime)
    result = route(runtime, conversation_id=cid, sender_id="coder", message_type="status-update",
                   payload={"progress": 40})
    assert result.recipients == ["lead", "reviewer"]
    assert result.rules_applied == []
    assert len(runtime.conversations.get(cid).history) == 1


@pytest.mark.parametrize("message", [
    {"sender_id": "coder", "message_type": "status-update"},
    {"conversation_id": "x", "message_type": "status-update"},
    {"conversation_id": "x", "sender_id": "coder"},
])
def test_missing_fields_rejected(runtime, message):
    with pytest.raises(MessageValidationError):
        route(runtime, **message)


def test_unknown_message_type_rejected(runtime):
    cid = start(runtime)
    with pytest.raises(ValidationError):
        route(runtime, conversation_id=cid, sender_id="coder", message_type="gossip")


def test_sender_and_recipients_must_be_participants(runtime):
    cid = start(runtime)
    with pytest.raises(MessageValidationError):
        route(runtime, conversation_id=cid, sender_id="stranger", message_type="status-update")
    with pytest.raises(MessageValidationError):
        route(runtime, conversation_id=cid, sender_id="coder", recipients=["ghost"], message_type="status-update")
    with pytest.raises(ConversationNotFoundError):
        route(runtime, conversation_id="conv-missing", sender_id="coder", message_type="status-update")


def test_high_urgency_escalates_to_primary_and_notifies_all(runtime):
    cid = start(runtime)
    result = route(runtime, conversation_id=cid, sender_id="coder", recipients=["reviewer"],
                   message_type="coordination", urgency="high", payload={"blocker": "db down"})
    assert result.escalated
    assert result.rules_applied == ["High Priority Escalation"]
    assert result.recipients == ["reviewer", "lead"]


def test_completion_moves_conversation_to_completing(runtime):
    cid = start(runtime)
    result = route(runtime, conversation_id=cid, sender_id="lead", recipients=["coder"],
                   message_type="completion", payload={"summary": "done"})
    assert result.broadcast
    assert result.state == ConversationState.COMPLETING
    assert result.recipients == ["coder", "reviewer"]

    conversation = asyncio.run(runtime.conversations.complete(cid))
    assert conversation.state_log[-2:] == [ConversationState.COMPLETING, ConversationState.COMPLETED]
    with pytest.raises(InvalidTransitionError):
        route(runtime, conversation_id=cid, sender_id="lead", message_type="status-update")


def test_question_schedules_response_deadline(runtime, clock):
    cid = start(runtime, timeouts=TimeoutSettings(response=15))
    question = route(runtime, conversation_id=cid, sender_id="coder", recipients=["lead"],
                     message_type="question", payload={"text": "Deploy now?"})
    assert question.reminder_scheduled
    conversation = runtime.conversations.get(cid)
    assert conversation.pending_responses == {question.message_id: clock() + 15}
    assert conversation.history[-1].requires_response

    route(runtime, conversation_id=cid, sender_id="lead", recipients=["coder"], message_type="response",
          payload={"text": "yes"}, in_reply_to=question.message_id)
    assert conversation.pending_responses == {}


def test_traffic_resumes_paused_conversation(runtime, clock):
    cid = start(runtime, timeouts=TimeoutSettings(inactivity=60))
    clock.advance(61)
    asyncio.run(runtime.conversations.check_timeouts())
    assert runtime.conversations.get(cid).state == ConversationState.PAUSED

    result = route(runtime, conversation_id=cid, sender_id="coder", message_type="status-update")
    assert result.state == ConversationState.ACTIVE
    assert runtime.conversations.get(cid).last_activity == clock()


def test_custom_route_rule(runtime):
    cid = start(runtime)
    rule = runtime.router.add_rule({
        "name": "Status to reviewer",
        "condition": {"message_types": ["status-update"]},
        "action": {"type": "route", "to_agents": ["reviewer"]},
        "priority": 60,
    })
    assert [r.name for r in runtime.router.list_rules()] == [
        "High Priority Escalation", "Completion Broadcast", "Response Reminder", "Status to reviewer",
    ]

    routed = route(runtime, conversation_id=cid, sender_id="coder", recipients=["lead"], message_type="status-update")
    assert routed.recipients == ["lead", "reviewer"]
    assert routed.rules_applied == ["Status to reviewer"]

    runtime.router.set_rule_enabled(rule.rule_id, False)
    routed = route(runtime, conversation_id=cid, sender_id="coder", recipients=["lead"], message_type="status-update")
    assert routed.recipients == ["lead"]

    assert runtime.router.remove_rule(rule.rule_id)
    assert not runtime.router.remove_rule(rule.rule_id)
    with pytest.raises(MessageValidationError):
        runtime.router.set_rule_enabled(rule.rule_id, True)


def test_role_targeted_rule_skips_sender(runtime):
    cid = start(runtime)
    runtime.router.add_rule({
        "name": "Tasks to observers",
        "condition": {"message_types": ["task-assignment"], "sender_roles": ["primary"]},
        "action": {"type": "route", "to_roles": ["observer", "primary"]},
    })
    routed = route(runtime, conversation_id=cid, sender_id="lead", recipients=["coder"], message_type="task-assignment")
    assert routed.recipients == ["coder", "reviewer"]

    routed = route(runtime, conversation_id=cid, sender_id="coder", recipients=["lead"], message_type="task-assignment")
    assert routed.rules_applied == []


def test_rule_action_must_be_known():
    from coordination_gateway.models import RoutingRule

    with pytest.raises(ValidationError):
        RoutingRule.model_validate({"name": "bad", "action": {"type": "teleport"}})


def test_drain_hands_over_queued_messages(runtime):
    cid = start(runtime)
    route(runtime, conversation_id=cid, sender_id="lead", message_type="task-assignment", payload={"task": "a"})
    route(runtime, conversation_id=cid, sender_id="lead", recipients=["coder"], message_type="status-update")

    assert runtime.router.pending(cid) == {"coder": 2, "reviewer": 1}
    messages = runtime.router.drain(cid, "coder")
    assert [m.message_type.value for m in messages] == ["task-assignment", "status-update"]
    assert runtime.router.drain(cid, "coder") == []
    assert runtime.router.pending(cid)["reviewer"] == 1


def test_built_in_rules_stay_in_force(runtime):
    router = runtime.router
    with pytest.raises(MessageValidationError):
        router.set_rule_enabled("completion-broadcast", False)
    with pytest.raises(MessageValidationError):
        router.remove_rule("high-priority-escalation")
    with pytest.raises(MessageValidationError):
        router.add_rule({
            "rule_id": "completion-broadcast",
            "name": "Quiet completion",
            "condition": {"message_types": ["completion"]},
            "action": {"type": "route", "to_agents": []},
        })
    # Re-enabling is harmless
    assert router.set_rule_enabled("completion-broadcast", True).enabled

    cid = start(runtime)
    done = route(runtime, conversation_id=cid, sender_id="lead", message_type="completion")
    assert done.state == ConversationState.COMPLETING
    urgent = route(runtime, conversation_id=cid, sender_id="coder", recipients=["reviewer"],
                   message_type="coordination", urgency="critical")
    assert urgent.escalated


def test_completed_conversation_queues_are_dropped(runtime):
    cid = start(runtime)
    route(runtime, conversation_id=cid, sender_id="lead", message_type="task-assignment", payload={"task": "a"})
    assert runtime.router.pending(cid) == {"coder": 1, "reviewer": 1}

    asyncio.run(runtime.conversations.complete(cid))
    assert runtime.router.pending(cid) == {}
    assert runtime.router.drain(cid, "coder") == []
    assert runtime.router.pending(cid) == {}
