import asyncio

import pytest

from learnchat.models import ConversationType
from learnchat.services.broadcaster import (
    MESSAGE_CREATED,
    PARTICIPANT_ADDED,
    PARTICIPANT_REMOVED,
    USER_TYPING,
    Broadcaster,
    conversation_channel,
    user_channel,
)
from learnchat.services.pubsub import InMemoryPubSub
from learnchat.ws import (
    SLOW_CONSUMER_CLOSE_CODE,
    ConnectionManager,
    OutboundQueue,
    SessionState,
)


class FakeWebSocket:
    def __init__(self, stuck: bool = False):
        self.sent = []
        self.closed_code = None
        self._stuck = stuck

    async def send_json(self, data):
        if self._stuck:
            await asyncio.Event().wait()
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_code = code


async def wait_until(condition, attempts: int = 100):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)


def event(name: str) -> dict:
    return {"event": name, "conversationId": None, "data": {}}


@pytest.fixture
def pubsub():
    return InMemoryPubSub()


@pytest.fixture
def manager(pubsub, sessionmaker):
    return ConnectionManager(pubsub, Broadcaster(pubsub), sessionmaker, queue_size=10)


# ===========================================
# Outbound queue
# ===========================================

async def test_queue_drops_oldest_non_critical_event_when_full():
    queue = OutboundQueue(2)
    assert queue.put(event(USER_TYPING))
    assert queue.put(event(MESSAGE_CREATED))
    assert queue.put(event("read.updated"))

    assert queue.dropped == 1
    assert (await queue.get())["event"] == MESSAGE_CREATED
    assert (await queue.get())["event"] == "read.updated"


async def test_queue_refuses_critical_event_it_cannot_hold():
    queue = OutboundQueue(2)
    queue.put(event(MESSAGE_CREATED))
    queue.put(event(MESSAGE_CREATED))

    assert queue.put(event(MESSAGE_CREATED)) is False
    assert len(queue) == 2


async def test_queue_drops_incoming_non_critical_event_when_full_of_critical_ones():
    queue = OutboundQueue(1)
    queue.put(event(MESSAGE_CREATED))

    assert queue.put(event(USER_TYPING)) is True
    assert queue.dropped == 1
    assert len(queue) == 1


# ===========================================
# Connection manager
# ===========================================

async def test_register_subscribes_to_active_conversations(manager, service, alice, bob):
    conversation, _ = await service.create_conversation(alice, ConversationType.DIRECT, [bob])
    session = await manager.connect(FakeWebSocket())

    conversation_ids = await manager.register(session, bob)

    assert conversation_ids == [conversation.id]
    assert session.state == SessionState.REGISTERED
    assert session.channels == {user_channel(bob), conversation_channel(conversation.id)}
    with pytest.raises(ValueError):
        await manager.register(session, bob)
    await manager.close()


async def test_membership_added_while_registering_is_followed(manager, service, alice, bob, carol):
    conversation, _ = await service.create_conversation(alice, ConversationType.GROUP, [carol], name="Physics")
    session = await manager.connect(FakeWebSocket())
    load_snapshot = manager._active_conversation_ids

    async def snapshot_then_added(user_id):
        conversation_ids = await load_snapshot(user_id)
        # bob is added after the snapshot was read but before register returns
        await manager.broadcaster.publish_to_user(
            bob, PARTICIPANT_ADDED, {"userId": str(bob)}, conversation_id=conversation.id
        )
        return conversation_ids

    manager._active_conversation_ids = snapshot_then_added
    await manager.register(session, bob)

    assert conversation_channel(conversation.id) in session.channels
    await manager.close()


async def test_membership_events_update_subscriptions(manager, service, alice, bob, carol):
    websocket = FakeWebSocket()
    session = await manager.connect(websocket)
    await manager.register(session, bob)
    conversation, _ = await service.create_conversation(alice, ConversationType.GROUP, [carol], name="Chemistry")
    await service.add_participants(conversation.id, alice, [bob])
    channel = conversation_channel(conversation.id)

    await manager.broadcaster.publish_to_user(bob, PARTICIPANT_ADDED, {"userId": str(bob)}, conversation_id=conversation.id)
    assert channel in session.channels

    await manager.broadcaster.publish(conversation.id, MESSAGE_CREATED, {"content": "welcome"})
    await wait_until(lambda: len(websocket.sent) == 2)
    assert [frame["event"] for frame in websocket.sent] == [PARTICIPANT_ADDED, MESSAGE_CREATED]

    await manager.broadcaster.publish(conversation.id, PARTICIPANT_REMOVED, {"userId": str(bob)})
    assert channel not in session.channels
    await manager.close()


async def test_join_requires_membership(manager, service, alice, bob, carol):
    conversation, _ = await service.create_conversation(alice, ConversationType.DIRECT, [bob])
    session = await manager.connect(FakeWebSocket())
    await manager.register(session, carol)

    assert await manager.join(session, conversation.id) is False
    assert conversation_channel(conversation.id) not in session.channels
    await manager.close()


async def test_typing_is_only_relayed_for_joined_conversations(manager, service, alice, bob):
    conversation, _ = await service.create_conversation(alice, ConversationType.DIRECT, [bob])
    alice_ws, bob_ws = FakeWebSocket(), FakeWebSocket()
    alice_session = await manager.connect(alice_ws)
    bob_session = await manager.connect(bob_ws)
    await manager.register(alice_session, alice)
    await manager.register(bob_session, bob)

    assert await manager.typing(alice_session, conversation.id, True)
    await wait_until(lambda: len(bob_ws.sent) == 1)
    assert bob_ws.sent[0]["event"] == USER_TYPING
    assert bob_ws.sent[0]["data"] == {"conversationId": str(conversation.id), "userId": str(alice), "isTyping": True}

    await manager.leave(alice_session, conversation.id)
    assert await manager.typing(alice_session, conversation.id, False) is False
    await manager.close()


async def test_slow_consumer_is_disconnected_instead_of_losing_messages(pubsub, sessionmaker, alice):
    manager = ConnectionManager(pubsub, Broadcaster(pubsub), sessionmaker, queue_size=2)
    websocket = FakeWebSocket(stuck=True)
    session = await manager.connect(websocket)
    await manager.register(session, alice)

    for n in range(5):
        await manager.broadcaster.publish_to_user(alice, MESSAGE_CREATED, {"content": f"m{n}"})

    await wait_until(lambda: websocket.closed_code is not None)
    assert websocket.closed_code == SLOW_CONSUMER_CLOSE_CODE
    assert session.state == SessionState.DISCONNECTED
    assert alice not in manager.active_connections


async def test_disconnect_is_idempotent(manager, alice):
    websocket = FakeWebSocket()
    session = await manager.connect(websocket)
    await manager.register(session, alice)

    await manager.disconnect(session)
    await manager.disconnect(session)

    assert websocket.closed_code == 1000
    assert manager.active_connections == {}
