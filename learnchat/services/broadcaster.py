import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from learnchat.models.conversation import Conversation
from learnchat.models.message import Message
from learnchat.schemas.conversation import make_conversation_dto
from learnchat.schemas.message import MessageDto, make_message_dto
from learnchat.services.messaging import SentMessage
from learnchat.services.pubsub import PubSub

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message.created"
MESSAGE_UPDATED = "message.updated"
MESSAGE_DELETED = "message.deleted"
PARTICIPANT_ADDED = "participant.added"
PARTICIPANT_REMOVED = "participant.removed"
REACTION_CHANGED = "reaction.changed"
READ_UPDATED = "read.updated"
CONVERSATION_CREATED = "conversation.created"
CONVERSATION_UPDATED = "conversation.updated"
CONVERSATION_DELETED = "conversation.deleted"
USER_TYPING = "user.typing"
NOTIFICATION = "notification"

# Events a live connection must never silently lose
CRITICAL_EVENTS = frozenset({MESSAGE_CREATED})

PREVIEW_LENGTH = 100


def conversation_channel(conversation_id) -> str:
    return f"conversation:{conversation_id}"


def user_channel(user_id) -> str:
    return f"user:{user_id}"


def _dump(dto) -> dict:
    return dto.model_dump(mode="json", by_alias=True)


def make_event(event: str, conversation_id: Optional[UUID], data: Dict[str, Any]) -> dict:
    return {
        "event": event,
        "conversationId": str(conversation_id) if conversation_id else None,
        "data": data,
    }


class Broadcaster:
    """Publishes committed changes to live subscribers.

    Publishing happens after the write is durable and never fails the write:
    errors and timeouts are logged and swallowed, clients recover by re-fetching.
    """

    def __init__(self, pubsub: PubSub, timeout: float = 2.0):
        self.pubsub = pubsub
        self.timeout = timeout

    async def _publish(self, channel: str, message: dict) -> bool:
        try:
            await asyncio.wait_for(self.pubsub.publish(channel, message), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.error(f"Timed out publishing {message['event']} to {channel}")
        except Exception:
            logger.exception(f"Failed to publish {message['event']} to {channel}")
        return False

    async def publish(self, conversation_id: UUID, event: str, data: Dict[str, Any]) -> bool:
        return await self._publish(conversation_channel(conversation_id), make_event(event, conversation_id, data))

    async def publish_to_user(
        self,
        user_id: UUID,
        event: str,
        data: Dict[str, Any],
        conversation_id: Optional[UUID] = None,
    ) -> bool:
        return await self._publish(user_channel(user_id), make_event(event, conversation_id, data))

    async def notify(self, user_id: UUID, data: Dict[str, Any], conversation_id: Optional[UUID] = None) -> bool:
        return await self.publish_to_user(user_id, NOTIFICATION, data, conversation_id)

    # ===========================================
    # Fan-out shared by the HTTP routes and the live gateway
    # ===========================================

    async def conversation_created(self, conversation: Conversation) -> None:
        # Personal channels, so members' live sessions start following the conversation
        payload = _dump(make_conversation_dto(conversation))
        for participant in conversation.active_participants:
            await self.publish_to_user(participant.user_id, CONVERSATION_CREATED, payload, conversation_id=conversation.id)

    async def message_sent(self, sent: SentMessage) -> MessageDto:
        """Announce a committed message and notify the other active, unmuted members."""
        conversation = sent.conversation
        dto = make_message_dto(sent.message)

        if sent.conversation_created:
            # Before the message, so the receivers' sessions already follow the conversation
            await self.conversation_created(conversation)

        await self.publish(conversation.id, MESSAGE_CREATED, _dump(dto))

        for participant in conversation.active_participants:
            if participant.user_id == dto.sender_id or participant.is_muted:
                continue
            await self.notify(
                participant.user_id,
                {
                    "type": "message",
                    "conversationId": str(conversation.id),
                    "messageId": str(dto.id),
                    "senderId": str(dto.sender_id),
                    "preview": dto.content[:PREVIEW_LENGTH],
                },
                conversation_id=conversation.id,
            )
        return dto

    async def conversation_read(self, conversation_id: UUID, user_id: UUID, last_read_at: datetime) -> None:
        await self.publish(
            conversation_id,
            READ_UPDATED,
            {"userId": str(user_id), "lastReadAt": last_read_at.isoformat()},
        )

    async def message_read(self, message: Message, user_id: UUID) -> None:
        await self.publish(
            message.conversation_id,
            READ_UPDATED,
            {"messageId": str(message.id), "userId": str(user_id)},
        )

    async def reaction_changed(self, message: Message, user_id: UUID, emoji: str, action: str) -> None:
        await self.publish(
            message.conversation_id,
            REACTION_CHANGED,
            {
                "messageId": str(message.id),
                "userId": str(user_id),
                "emoji": emoji,
                "action": action,
                "reactions": message.reaction_map(),
            },
        )
