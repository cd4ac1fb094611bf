import asyncio

from learnchat.services.broadcaster import (
    MESSAGE_CREATED,
    Broadcaster,
    conversation_channel,
    user_channel,
)
from learnchat.services.pubsub import InMemoryPubSub, PubSub


class Recorder:
    def __init__(self):
        self.received = []

    async def __call__(self, channel, message):
        self.received.append((channel, message))


async def test_in_memory_pubsub_delivers_to_subscribers():
    pubsub = InMemoryPubSub()
    first, second = Recorder(), Recorder()
    await pubsub.subscribe("conversation:1", first)
    await pubsub.subscribe("conversation:1", second)

    await pubsub.publish("conversation:1", {"event": "message.created"})
    await pubsub.publish("conversation:2", {"event": "message.created"})

    assert first.received == [("conversation:1", {"event": "message.created"})]
    assert second.received == first.received


async def test_subscribers_get_their_own_copy():
    pubsub = InMemoryPubSub()
    recorder = Recorder()
    await pubsub.subscribe("user:1", recorder)
    payload = {"event": "notification", "data": {"preview": "hi"}}

    await pubsub.publish("user:1", payload)
    recorder.received[0][1]["data"]["preview"] = "changed"

    assert payload["data"]["preview"] == "hi"


async def test_failing_subscriber_does_not_block_others():
    pubsub = InMemoryPubSub()
    recorder = Recorder()

    async def broken(channel, message):
        raise RuntimeError("boom")

    await pubsub.subscribe("user:1", broken)
    await pubsub.subscribe("user:1", recorder)
    await pubsub.publish("user:1", {"event": "notification"})

    assert len(recorder.received) == 1


async def test_unsubscribe_stops_delivery():
    pubsub = InMemoryPubSub()
    recorder = Recorder()
    await pubsub.subscribe("user:1", recorder)
    await pubsub.unsubscribe("user:1", recorder)

    await pubsub.publish("user:1", {"event": "notification"})

    assert recorder.received == []


async def test_broadcaster_wraps_events():
    pubsub = InMemoryPubSub()
    recorder = Recorder()
    await pubsub.subscribe(conversation_channel("abc"), recorder)
    broadcaster = Broadcaster(pubsub)

    assert await broadcaster.publish("abc", MESSAGE_CREATED, {"content": "hi"})
    assert recorder.received == [
        ("conversation:abc", {"event": "message.created", "conversationId": "abc", "data": {"content": "hi"}})
    ]
    assert user_channel("u1") == "user:u1"


async def test_broadcaster_swallows_publish_failures():
    class DownPubSub(PubSub):
        async def publish(self, channel, message):
            raise ConnectionError("redis is down")

    assert await Broadcaster(DownPubSub()).publish("abc", MESSAGE_CREATED, {}) is False


async def test_broadcaster_times_out_slow_publishes():
    class SlowPubSub(PubSub):
        async def publish(self, channel, message):
            await asyncio.sleep(5)

    broadcaster = Broadcaster(SlowPubSub(), timeout=0.01)
    assert await broadcaster.publish("abc", MESSAGE_CREATED, {}) is False
