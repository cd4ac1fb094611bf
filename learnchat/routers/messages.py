from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from learnchat.config import Settings
from learnchat.dependencies import (
    enforce_send_rate_limit,
    get_app_settings,
    get_broadcaster,
    get_current_user_id,
    get_messaging_service,
    with_store_timeout,
)
from learnchat.schemas.message import (
    MessageDto,
    ReactionRequest,
    SendMessageRequest,
    UpdateMessageRequest,
    make_message_dto,
)
from learnchat.services import broadcaster as events
from learnchat.services.broadcaster import Broadcaster
from learnchat.services.messaging import MessagingService

router = APIRouter()


def _dump(dto) -> dict:
    return dto.model_dump(mode="json", by_alias=True)


@router.post(
    "",
    response_model=MessageDto,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(enforce_send_rate_limit)],
)
async def send_message(
    body: SendMessageRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    """Send a message to a conversation, or to a user through their direct conversation.

    Fan-out happens only after the message is committed.
    """
    sent = await with_store_timeout(
        service.send_message(
            user_id,
            body.content,
            conversation_id=body.conversation_id,
            receiver_id=body.receiver_id,
            type=body.type,
            attachments=[a.model_dump(mode="json", by_alias=True) for a in body.attachments],
            reply_to_id=body.reply_to_id,
            metadata=body.metadata,
        ),
        settings,
    )
    return await broadcaster.message_sent(sent)


@router.get("/search", response_model=List[MessageDto])
async def search_messages(
    query: str = Query(..., min_length=1, max_length=200),
    conversation_id: Optional[UUID] = Query(None, alias="conversationId"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    settings: Settings = Depends(get_app_settings),
):
    messages = await with_store_timeout(
        service.search_messages(user_id, query, conversation_id=conversation_id, limit=limit, offset=offset),
        settings,
    )
    return [make_message_dto(m) for m in messages]


@router.get("/{message_id}", response_model=MessageDto)
async def get_message(
    message_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    settings: Settings = Depends(get_app_settings),
):
    message = await with_store_timeout(service.get_message(message_id, user_id), settings)
    return make_message_dto(message)


@router.put("/{message_id}", response_model=MessageDto)
async def update_message(
    message_id: UUID,
    body: UpdateMessageRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    """Edit a message. Only its sender may edit, and deleted messages cannot be edited."""
    message = await with_store_timeout(
        service.update_message(message_id, user_id, content=body.content, metadata=body.metadata),
        settings,
    )
    dto = make_message_dto(message)
    await broadcaster.publish(message.conversation_id, events.MESSAGE_UPDATED, _dump(dto))
    return dto


@router.delete("/{message_id}", response_model=MessageDto)
async def delete_message(
    message_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    """Soft delete. The message keeps its place in history with placeholder content."""
    message = await with_store_timeout(service.delete_message(message_id, user_id), settings)
    dto = make_message_dto(message)
    await broadcaster.publish(
        message.conversation_id,
        events.MESSAGE_DELETED,
        {
            "messageId": str(message.id),
            "deletedBy": str(user_id),
            "deletedAt": message.deleted_at.isoformat(),
        },
    )
    return dto


@router.post("/{message_id}/read", response_model=MessageDto)
async def mark_message_read(
    message_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    message = await with_store_timeout(service.mark_message_as_read(message_id, user_id), settings)
    await broadcaster.message_read(message, user_id)
    return make_message_dto(message)


@router.post("/{message_id}/reactions", response_model=MessageDto)
async def add_reaction(
    message_id: UUID,
    body: ReactionRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    """Add a reaction. Adding the same emoji twice is a no-op."""
    message = await with_store_timeout(service.add_reaction(message_id, user_id, body.emoji), settings)
    await broadcaster.reaction_changed(message, user_id, body.emoji.strip(), "added")
    return make_message_dto(message)


@router.delete("/{message_id}/reactions", response_model=MessageDto)
async def remove_reaction(
    message_id: UUID,
    emoji: str = Query(..., min_length=1, max_length=32),
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    message = await with_store_timeout(service.remove_reaction(message_id, user_id, emoji), settings)
    await broadcaster.reaction_changed(message, user_id, emoji.strip(), "removed")
    return make_message_dto(message)
