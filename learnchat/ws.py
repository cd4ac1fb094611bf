from collections import deque
from typing import Deque, Dict, List, Optional, Set
from uuid import UUID, uuid4
from fastapi import WebSocket
import asyncio
import enum
import logging

from learnchat.services.broadcaster import (
    Broadcaster,
    CONVERSATION_CREATED,
    CONVERSATION_DELETED,
    CRITICAL_EVENTS,
    PARTICIPANT_ADDED,
    PARTICIPANT_REMOVED,
    USER_TYPING,
    conversation_channel,
    user_channel,
)
from learnchat.services.messaging import MessagingService
from learnchat.services.pubsub import PubSub

logger = logging.getLogger(__name__)

# Close code sent to clients that cannot keep up ("try again later")
SLOW_CONSUMER_CLOSE_CODE = 1013


class SessionState(str, enum.Enum):
    CONNECTED = "connected"
    REGISTERED = "registered"
    DISCONNECTED = "disconnected"


class OutboundQueue:
    """Bounded per-connection queue.

    When full, the oldest non-critical event makes room. A critical event that
    cannot be queued makes put() return False so the caller can drop the client
    instead of silently losing it.
    """

    def __init__(self, maxsize: int):
        self._items: Deque[dict] = deque()
        self._maxsize = maxsize
        self._not_empty = asyncio.Event()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    def put(self, item: dict) -> bool:
        if len(self._items) >= self._maxsize:
            for index, queued in enumerate(self._items):
                if queued.get("event") not in CRITICAL_EVENTS:
                    del self._items[index]
                    self.dropped += 1
                    break
            else:
                if item.get("event") in CRITICAL_EVENTS:
                    return False
                self.dropped += 1
                return True
        self._items.append(item)
        self._not_empty.set()
        return True

    async def get(self) -> dict:
        while not self._items:
            self._not_empty.clear()
            await self._not_empty.wait()
        return self._items.popleft()


class LiveSession:
    """One interactively connected client."""

    def __init__(self, websocket: WebSocket, queue_size: int):
        self.id = uuid4().hex
        self.websocket = websocket
        self.state = SessionState.CONNECTED
        self.user_id: Optional[UUID] = None
        self.channels: Set[str] = set()
        self.queue = OutboundQueue(queue_size)
        self._sender: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._sender = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while True:
            item = await self.queue.get()
            try:
                await self.websocket.send_json(item)
            except Exception:
                logger.info(f"Send to session {self.id} failed; waiting for disconnect")
                return

    def push(self, item: dict) -> bool:
        if self.state == SessionState.DISCONNECTED:
            return True
        return self.queue.put(item)

    async def close(self, code: int = 1000) -> None:
        if self._sender is not None:
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
            self._sender = None
        try:
            await self.websocket.close(code=code)
        except Exception:
            # Already closed by the peer
            pass


class ConnectionManager:
    """Live Session Gateway for this process.

    Sessions register with a user id and are then subscribed to one channel per
    active conversation plus the user's personal channel. Channel subscriptions
    towards the pub/sub backend are shared by all local sessions.
    """

    def __init__(self, pubsub: PubSub, broadcaster: Broadcaster, sessionmaker, queue_size: int = 100):
        self.pubsub = pubsub
        self.broadcaster = broadcaster
        self.sessionmaker = sessionmaker
        self.queue_size = queue_size
        # user_id -> set of registered sessions
        self.active_connections: Dict[UUID, Set[LiveSession]] = {}
        self._channel_sessions: Dict[str, Set[LiveSession]] = {}
        self._sessions: Set[LiveSession] = set()
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket) -> LiveSession:
        session = LiveSession(websocket, self.queue_size)
        session.start()
        self._sessions.add(session)
        logger.info(f"Live session {session.id} connected")
        return session

    async def _active_conversation_ids(self, user_id: UUID) -> List[UUID]:
        async with self.sessionmaker() as db:
            return await MessagingService(db).active_conversation_ids(user_id)

    async def _is_member(self, conversation_id: UUID, user_id: UUID) -> bool:
        async with self.sessionmaker() as db:
            return await MessagingService(db).is_active_participant(conversation_id, user_id)

    async def register(self, session: LiveSession, user_id: UUID) -> List[UUID]:
        if session.state != SessionState.CONNECTED:
            raise ValueError(f"Session {session.id} cannot register from state {session.state.value}")

        session.user_id = user_id
        session.state = SessionState.REGISTERED
        async with self._lock:
            self.active_connections.setdefault(user_id, set()).add(session)

        # Before the snapshot, so membership changes made while it loads still reach this session
        await self._subscribe(session, user_channel(user_id))
        conversation_ids = await self._active_conversation_ids(user_id)
        for conversation_id in conversation_ids:
            await self._subscribe(session, conversation_channel(conversation_id))
        logger.info(f"Live session {session.id} registered for user {user_id} ({len(conversation_ids)} conversations)")
        return conversation_ids

    async def join(self, session: LiveSession, conversation_id: UUID) -> bool:
        if session.state != SessionState.REGISTERED:
            return False
        if not await self._is_member(conversation_id, session.user_id):
            return False
        await self._subscribe(session, conversation_channel(conversation_id))
        return True

    async def leave(self, session: LiveSession, conversation_id: UUID) -> None:
        await self._unsubscribe(session, conversation_channel(conversation_id))

    async def typing(self, session: LiveSession, conversation_id: UUID, is_typing: bool) -> bool:
        channel = conversation_channel(conversation_id)
        if session.state != SessionState.REGISTERED or channel not in session.channels:
            return False
        return await self.broadcaster.publish(
            conversation_id,
            USER_TYPING,
            {"conversationId": str(conversation_id), "userId": str(session.user_id), "isTyping": is_typing},
        )

    async def disconnect(self, session: LiveSession, code: int = 1000) -> None:
        if session.state == SessionState.DISCONNECTED:
            return
        session.state = SessionState.DISCONNECTED
        for channel in list(session.channels):
            await self._unsubscribe(session, channel)
        async with self._lock:
            if session.user_id is not None:
                conns = self.active_connections.get(session.user_id)
                if conns:
                    conns.discard(session)
                    if len(conns) == 0:
                        self.active_connections.pop(session.user_id, None)
            self._sessions.discard(session)
        await session.close(code=code)
        logger.info(f"Live session {session.id} disconnected")

    async def close(self) -> None:
        for session in list(self._sessions):
            await self.disconnect(session, code=1001)

    async def _subscribe(self, session: LiveSession, channel: str) -> None:
        async with self._lock:
            if channel in session.channels:
                return
            sessions = self._channel_sessions.get(channel)
            if sessions is None:
                sessions = set()
                self._channel_sessions[channel] = sessions
                # First local listener for this channel
                await self.pubsub.subscribe(channel, self._on_message)
            sessions.add(session)
            session.channels.add(channel)

    async def _unsubscribe(self, session: LiveSession, channel: str) -> None:
        async with self._lock:
            session.channels.discard(channel)
            sessions = self._channel_sessions.get(channel)
            if not sessions:
                return
            sessions.discard(session)
            if len(sessions) == 0:
                self._channel_sessions.pop(channel, None)
                await self.pubsub.unsubscribe(channel, self._on_message)

    async def _on_message(self, channel: str, message: dict) -> None:
        for session in list(self._channel_sessions.get(channel, ())):
            if not session.push(message):
                task = asyncio.create_task(self._drop_slow_consumer(session))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        await self._apply_membership_change(channel, message)

    async def _drop_slow_consumer(self, session: LiveSession) -> None:
        logger.warning(f"Live session {session.id} of user {session.user_id} cannot keep up; disconnecting")
        await self.disconnect(session, code=SLOW_CONSUMER_CLOSE_CODE)

    def _local_sessions(self, user_id: UUID) -> List[LiveSession]:
        return [s for s in self.active_connections.get(user_id, ()) if s.state == SessionState.REGISTERED]

    async def _apply_membership_change(self, channel: str, message: dict) -> None:
        event = message.get("event")
        conversation_id = message.get("conversationId")
        if not conversation_id:
            return
        target = conversation_channel(conversation_id)

        if channel.startswith("user:") and event in (PARTICIPANT_ADDED, CONVERSATION_CREATED):
            user_id = UUID(channel.split(":", 1)[1])
            for session in self._local_sessions(user_id):
                await self._subscribe(session, target)

        elif channel == target and event == PARTICIPANT_REMOVED:
            removed = (message.get("data") or {}).get("userId")
            if removed:
                for session in self._local_sessions(UUID(removed)):
                    await self._unsubscribe(session, target)

        elif channel == target and event == CONVERSATION_DELETED:
            for session in list(self._channel_sessions.get(target, ())):
                await self._unsubscribe(session, target)
