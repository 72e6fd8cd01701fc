import asyncio

import pytest

from coordination_gateway.errors import ConversationNotFoundError, InvalidTransitionError, ParticipantValidationError
from coordination_gateway.models import ConversationState, ParticipantRole, ParticipantStatus, TimeoutSettings
from coordination_gateway.runtime import GatewayRuntime

TEAM = [
    {"agent_id": "planner", "role": "primary", "expertise": "planning"},
    {"agent_id": "coder", "expertise": "python", "capabilities": ["python", "testing"]},
    {"agent_id": "reviewer", "role": "observer", "expertise": "review"},
]


def test_initiate_connects_participants_and_seeds_context(runtime):
    manager = runtime.conversations

    async def scenario():
        return await manager.initiate("task-1", "planner", TEAM, initial_context={"goal": "ship v2"})

    result = asyncio.run(scenario())
    assert result.state == ConversationState.ACTIVE
    assert result.connected == ["planner", "coder", "reviewer"]
    assert result.offline == []
    assert not result.degraded

    conversation = manager.get(result.conversation_id)
    assert conversation.state_log == [ConversationState.INITIALIZING, ConversationState.ACTIVE]
    assert all(p.status == ParticipantStatus.ACTIVE for p in conversation.participants)
    assert conversation.shared_data == {"goal": "ship v2"}
    assert runtime.context.get(result.conversation_id).get("goal").last_modified_by == "planner"
    assert runtime.pool.statistics()["active_connections"] == 3


def test_invalid_participants_are_reported_per_item(runtime):
    participants = [
        {"agent_id": "coder"},
        {"role": "secondary"},
        {"agent_id": "coder"},
        {"agent_id": "   "},
        {"agent_id": "qa", "role": "not-a-role"},
    ]

    result = asyncio.run(runtime.conversations.initiate("task-1", "lead", participants))
    assert [item["index"] for item in result.invalid] == [1, 2, 3, 4]
    assert "duplicate" in result.invalid[1]["error"]

    conversation = runtime.conversations.get(result.conversation_id)
    # The initiator joins as primary when not listed
    assert conversation.participant_ids == ["lead", "coder"]
    assert conversation.participant("lead").role == ParticipantRole.PRIMARY


def test_all_invalid_participants_rejected(runtime):
    with pytest.raises(ParticipantValidationError):
        asyncio.run(runtime.conversations.initiate("task-1", "lead", [{"role": "primary"}, "nobody"]))


def test_unreachable_participants_start_degraded_session(clock):
    async def unreachable(participant_type, session_id):
        raise ConnectionRefusedError("no route")

    runtime = GatewayRuntime(clock=clock, connector=unreachable)
    result = asyncio.run(runtime.conversations.initiate("task-1", "planner", TEAM[:2]))

    assert result.degraded
    assert result.state == ConversationState.ACTIVE
    assert result.connected == []
    assert result.offline == ["planner", "coder"]
    assert runtime.errors.stats()["fallbacks_used"] == 2
    assert runtime.conversations.system_metrics()["degraded_conversations"] == 1


def test_inactivity_pauses_and_total_timeout_expires(runtime, clock):
    manager = runtime.conversations
    timeouts = TimeoutSettings(response=10, inactivity=60, total=600)

    async def scenario():
        result = await manager.initiate("task-1", "planner", TEAM, timeouts=timeouts)
        conversation_id = result.conversation_id

        clock.advance(30)
        quiet = await manager.check_timeouts()

        clock.advance(31)
        paused = await manager.check_timeouts()
        state_after_pause = manager.get(conversation_id).state

        await manager.resume(conversation_id)
        clock.advance(540)
        expired = await manager.check_timeouts()
        return conversation_id, quiet, paused, state_after_pause, expired

    conversation_id, quiet, paused, state_after_pause, expired = asyncio.run(scenario())
    assert quiet == []
    assert [e.event for e in paused] == ["conversation_timeout"]
    assert state_after_pause == ConversationState.PAUSED
    assert [e.event for e in expired] == ["conversation_expired"]

    conversation = manager.get(conversation_id)
    assert conversation.state == ConversationState.COMPLETED
    assert conversation.completion_reason == "timeout"
    assert runtime.monitor.get(conversation_id).status == "timeout"
    assert len(manager.events) == 2


def test_overdue_response_sends_one_reminder(runtime, clock):
    manager = runtime.conversations

    async def scenario():
        result = await manager.initiate("task-1", "planner", TEAM, timeouts=TimeoutSettings(response=10))
        routed = await runtime.router.route({
            "conversation_id": result.conversation_id,
            "sender_id": "planner",
            "recipients": ["coder"],
            "message_type": "question",
            "payload": {"text": "Which ORM?"},
        })
        clock.advance(11)
        first = await manager.check_timeouts()
        second = await manager.check_timeouts()
        return result.conversation_id, routed, first, second

    conversation_id, routed, first, second = asyncio.run(scenario())
    assert [(e.event, e.message_id) for e in first] == [("response_reminder", routed.message_id)]
    assert second == []
    assert manager.get(conversation_id).state == ConversationState.ACTIVE


def test_complete_releases_connections(runtime):
    manager = runtime.conversations

    async def scenario():
        result = await manager.initiate("task-1", "planner", TEAM)
        return await manager.complete(result.conversation_id, "done")

    conversation = asyncio.run(scenario())
    assert conversation.state == ConversationState.COMPLETED
    assert conversation.completion_reason == "done"
    assert all(p.connection_id is None for p in conversation.participants)
    stats = runtime.pool.statistics()
    assert stats["active_connections"] == 0
    assert stats["idle_connections"] == 3
    assert manager.list_active() == []


def test_completed_conversation_cannot_resume(runtime):
    manager = runtime.conversations

    async def scenario():
        result = await manager.initiate("task-1", "planner", TEAM)
        await manager.complete(result.conversation_id)
        await manager.resume(result.conversation_id)

    with pytest.raises(InvalidTransitionError):
        asyncio.run(scenario())


def test_unknown_conversation(runtime):
    with pytest.raises(ConversationNotFoundError):
        runtime.conversations.get("conv-missing")
    with pytest.raises(ConversationNotFoundError):
        asyncio.run(runtime.conversations.complete("conv-missing"))


def test_metrics_track_response_time_and_consensus(runtime, clock):
    manager = runtime.conversations
    router = runtime.router

    async def scenario():
        result = await manager.initiate("task-1", "planner", TEAM)
        cid = result.conversation_id
        await router.route({"conversation_id": cid, "sender_id": "planner", "message_type": "task-assignment",
                            "payload": {"task": "build api"}})
        question = await router.route({"conversation_id": cid, "sender_id": "coder", "recipients": ["planner"],
                                       "message_type": "question", "payload": {"text": "REST or gRPC?"}})
        clock.advance(4)
        await router.route({"conversation_id": cid, "sender_id": "planner", "recipients": ["coder"],
                            "message_type": "response", "payload": {"text": "REST"},
                            "in_reply_to": question.message_id})
        return cid

    cid = asyncio.run(scenario())
    manager.record_decision(cid, "Use REST", "planner", value="REST", consensus=True)
    manager.record_decision(cid, "Defer caching", "planner")

    metrics = manager.get_metrics(cid)
    assert metrics["message_count"] == 3
    assert metrics["average_response_time"] == 4.0
    assert metrics["consensus_rate"] == 0.5
    assert metrics["coordination_efficiency"] == pytest.approx(2 / 3, rel=1e-5)
    assert manager.get(cid).pending_responses == {}

    status = manager.get_status(cid)
    assert status["message_count"] == 3
    assert status["decisions"] == 2
    assert status["context"]["conversation_id"] == cid


def test_repeated_messages_lower_efficiency(runtime):
    manager = runtime.conversations

    async def scenario():
        result = await manager.initiate("task-1", "planner", TEAM)
        for _ in range(2):
            await runtime.router.route({"conversation_id": result.conversation_id, "sender_id": "coder",
                                        "message_type": "status-update", "payload": {"progress": 50}})
        return result.conversation_id

    cid = asyncio.run(scenario())
    assert manager.get_metrics(cid)["coordination_efficiency"] == pytest.approx(0.8)


def test_conversations_for_agent(runtime):
    manager = runtime.conversations

    async def scenario():
        await manager.initiate("task-1", "planner", TEAM)
        await manager.initiate("task-2", "coder", [{"agent_id": "coder"}])

    asyncio.run(scenario())
    assert len(manager.conversations_for_agent("coder")) == 2
    assert len(manager.conversations_for_agent("reviewer")) == 1
    assert manager.system_metrics()["total_conversations"] == 2


def test_background_loop_starts_and_stops(runtime):
    manager = runtime.conversations
    manager.interval = 0.01

    async def scenario():
        await manager.start()
        await asyncio.sleep(0.05)
        running = manager._running
        await manager.stop()
        return running

    assert asyncio.run(scenario()) is True
    assert manager._running is False


def test_completed_conversations_are_archived(runtime):
    manager = runtime.conversations

    async def scenario():
        result = await manager.initiate("task-1", "planner", TEAM, initial_context={"goal": "ship v2"})
        await manager.complete(result.conversation_id, "done")
        return result.conversation_id

    cid = asyncio.run(scenario())
    with pytest.raises(ConversationNotFoundError):
        runtime.context.get(cid)
    assert cid not in manager._locks

    conversation = manager.get(cid)
    assert conversation.shared_data == {"goal": "ship v2"}
    status = manager.get_status(cid)
    assert status["state"] == "completed"
    assert status["context"]["conversation_id"] == cid
    metrics = manager.system_metrics()
    assert metrics["archived_conversations"] == 1
    assert metrics["total_conversations"] == 1


def test_archive_keeps_only_the_newest(runtime):
    manager = runtime.conversations
    manager.archive_limit = 2

    async def scenario():
        ids = []
        for i in range(3):
            result = await manager.initiate(f"task-{i}", "planner", TEAM[:1])
            await manager.complete(result.conversation_id)
            ids.append(result.conversation_id)
        return ids

    first, second, third = asyncio.run(scenario())
    with pytest.raises(ConversationNotFoundError):
        manager.get(first)
    assert manager.get(second).state == ConversationState.COMPLETED
    assert manager.get(third).state == ConversationState.COMPLETED


def test_background_loop_survives_a_failing_pass(runtime):
    manager = runtime.conversations
    manager.interval = 0.01
    passes = []

    async def flaky(now=None):
        passes.append(now)
        if len(passes) == 1:
            raise RuntimeError("sweep failed")
        return []

    manager.check_timeouts = flaky

    async def scenario():
        await manager.start()
        await asyncio.sleep(0.1)
        await manager.stop()

    asyncio.run(scenario())
    assert len(passes) >= 2


def test_timeout_sweep_skips_conversation_completed_while_waiting(runtime, clock):
    manager = runtime.conversations

    async def scenario():
        result = await manager.initiate("task-1", "planner", TEAM, timeouts=TimeoutSettings(total=10))
        cid = result.conversation_id
        clock.advance(11)
        # Both tasks queue on the conversation lock; completion is first in line
        async with manager.lock(cid):
            completing = asyncio.create_task(manager.complete(cid, "done"))
            sweeping = asyncio.create_task(manager.check_timeouts())
            await asyncio.sleep(0)
        conversation, events = await asyncio.gather(completing, sweeping)
        return conversation, events

    conversation, events = asyncio.run(scenario())
    assert conversation.completion_reason == "done"
    assert events == []
    assert conversation.state_log.count(ConversationState.COMPLETED) == 1


def test_concurrent_traffic_is_serialized_per_conversation(clock):
    async def yielding(participant_type, session_id):
        await asyncio.sleep(0)
        return {"participant_type": participant_type, "session_id": session_id}

    runtime = GatewayRuntime(clock=clock, connector=yielding)
    manager = runtime.conversations
    router = runtime.router

    async def scenario():
        first, second = await asyncio.gather(
            manager.initiate("task-1", "planner", TEAM),
            manager.initiate("task-2", "coder", [{"agent_id": "coder"}, {"agent_id": "tester"}]),
        )
        cid = first.conversation_id
        routed = await asyncio.gather(*(
            router.route({"conversation_id": cid, "sender_id": sender, "message_type": "status-update",
                          "payload": {"n": i}})
            for i, sender in enumerate(["planner", "coder", "reviewer"] * 5)
        ))
        outcome = await asyncio.gather(
            router.route({"conversation_id": cid, "sender_id": "planner", "message_type": "completion"}),
            manager.complete(cid, "done"),
            manager.check_timeouts(),
            return_exceptions=True,
        )
        return first, second, routed, outcome

    first, second, routed, outcome = asyncio.run(scenario())
    assert first.connected == ["planner", "coder", "reviewer"]
    assert second.connected == ["coder", "tester"]
    conversation = manager.get(first.conversation_id)
    assert [m.message_id for m in conversation.history[:15]] == [r.message_id for r in routed]
    assert [m.payload["n"] for m in conversation.history[:15]] == list(range(15))

    completion, completed, events = outcome
    assert completion.state == ConversationState.COMPLETING
    assert completed.state == ConversationState.COMPLETED
    assert events == []
    assert conversation.state_log[-2:] == [ConversationState.COMPLETING, ConversationState.COMPLETED]
    assert manager.get(second.conversation_id).state == ConversationState.ACTIVE
