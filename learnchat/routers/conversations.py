from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from learnchat.config import Settings
from learnchat.dependencies import (
    get_app_settings,
    get_broadcaster,
    get_current_user_id,
    get_messaging_service,
    with_store_timeout,
)
from learnchat.models.conversation import ConversationType
from learnchat.schemas.common import make_pagination, resolve_page
from learnchat.schemas.conversation import (
    AddParticipantsRequest,
    ConversationDto,
    ConversationListDto,
    CreateConversationRequest,
    MuteRequest,
    ParticipantDto,
    ReadStateDto,
    UnreadCountDto,
    UpdateConversationRequest,
    make_conversation_dto,
    make_participant_dto,
)
from learnchat.schemas.message import MessageListDto, make_message_dto
from learnchat.services import broadcaster as events
from learnchat.services.broadcaster import Broadcaster
from learnchat.services.messaging import MessagingService

router = APIRouter()


def _dump(dto) -> dict:
    return dto.model_dump(mode="json", by_alias=True)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@router.post("", response_model=ConversationDto, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    body: CreateConversationRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    """Create a group conversation, or get-or-create the direct conversation for a pair."""
    conversation, created = await with_store_timeout(
        service.create_conversation(user_id, body.type, body.participant_ids, body.name, body.description),
        settings,
    )
    dto = make_conversation_dto(conversation)

    if created:
        await broadcaster.conversation_created(conversation)

    return dto


@router.get("", response_model=ConversationListDto)
async def get_my_conversations(
    type: Optional[ConversationType] = None,
    search: Optional[str] = Query(None, max_length=100),
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    offset: Optional[int] = Query(None, ge=0),
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    settings: Settings = Depends(get_app_settings),
):
    """List conversations the caller is an active member of, most recent first."""
    page, offset, limit = resolve_page(page, offset, limit)
    summaries, total = await with_store_timeout(
        service.get_conversations(user_id, type=type, search=search, offset=offset, limit=limit),
        settings,
    )
    return ConversationListDto(
        conversations=[
            make_conversation_dto(s.conversation, s.last_message, s.unread_count)
            for s in summaries
        ],
        pagination=make_pagination(page, limit, total, offset),
    )


@router.get("/{conversation_id}", response_model=ConversationDto)
async def get_conversation(
    conversation_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    settings: Settings = Depends(get_app_settings),
):
    summary = await with_store_timeout(service.get_conversation(conversation_id, user_id), settings)
    return make_conversation_dto(summary.conversation, summary.last_message, summary.unread_count)


@router.put("/{conversation_id}", response_model=ConversationDto)
async def update_conversation(
    conversation_id: UUID,
    body: UpdateConversationRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    """Rename or re-describe a conversation (owner only)."""
    conversation = await with_store_timeout(
        service.update_conversation(conversation_id, user_id, name=body.name, description=body.description),
        settings,
    )
    dto = make_conversation_dto(conversation)
    await broadcaster.publish(conversation.id, events.CONVERSATION_UPDATED, _dump(dto))
    return dto


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    """Soft delete a conversation (owner only). History is kept."""
    conversation, members = await with_store_timeout(
        service.delete_conversation(conversation_id, user_id), settings
    )
    await broadcaster.publish(
        conversation.id,
        events.CONVERSATION_DELETED,
        {
            "conversationId": str(conversation.id),
            "deletedBy": str(user_id),
            "deletedAt": conversation.deleted_at.isoformat(),
            "userIds": [str(m) for m in members],
        },
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{conversation_id}/participants", response_model=list[ParticipantDto])
async def add_participants(
    conversation_id: UUID,
    body: AddParticipantsRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    participants = await with_store_timeout(
        service.add_participants(conversation_id, user_id, body.user_ids), settings
    )
    dtos = [make_participant_dto(p) for p in participants]

    for dto in dtos:
        payload = {**_dump(dto), "addedBy": str(user_id)}
        await broadcaster.publish(conversation_id, events.PARTICIPANT_ADDED, payload)
        # Personal channel so the new member's live sessions start following the conversation
        await broadcaster.publish_to_user(dto.user_id, events.PARTICIPANT_ADDED, payload, conversation_id=conversation_id)

    return dtos


@router.delete("/{conversation_id}/participants/{target_user_id}", response_model=ParticipantDto)
async def remove_participant(
    conversation_id: UUID,
    target_user_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    """Remove a member (owner) or leave (self). The membership row is kept with leftAt set."""
    participant = await with_store_timeout(
        service.remove_participant(conversation_id, user_id, target_user_id), settings
    )
    dto = make_participant_dto(participant)
    await broadcaster.publish(
        conversation_id,
        events.PARTICIPANT_REMOVED,
        {**_dump(dto), "removedBy": str(user_id)},
    )
    return dto


@router.put("/{conversation_id}/mute", response_model=ParticipantDto)
async def set_muted(
    conversation_id: UUID,
    body: MuteRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    settings: Settings = Depends(get_app_settings),
):
    """Mute or unmute message notifications for the caller."""
    participant = await with_store_timeout(service.set_muted(conversation_id, user_id, body.muted), settings)
    return make_participant_dto(participant)


@router.get("/{conversation_id}/messages", response_model=MessageListDto)
async def get_messages(
    conversation_id: UUID,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    offset: Optional[int] = Query(None, ge=0),
    before: Optional[datetime] = None,
    after: Optional[datetime] = None,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    settings: Settings = Depends(get_app_settings),
):
    """Message history in persisted order (createdAt, then id). Deleted messages stay in place, redacted."""
    page, offset, limit = resolve_page(page, offset, limit)
    messages, total = await with_store_timeout(
        service.get_messages(
            conversation_id, user_id, offset=offset, limit=limit,
            before=_naive_utc(before), after=_naive_utc(after),
        ),
        settings,
    )
    return MessageListDto(
        messages=[make_message_dto(m) for m in messages],
        pagination=make_pagination(page, limit, total, offset),
    )


@router.post("/{conversation_id}/read", response_model=ReadStateDto)
async def mark_conversation_read(
    conversation_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    participant, unread = await with_store_timeout(service.mark_as_read(conversation_id, user_id), settings)
    dto = ReadStateDto(
        conversation_id=conversation_id,
        user_id=user_id,
        last_read_at=participant.last_read_at,
        unread_count=unread,
    )
    await broadcaster.conversation_read(conversation_id, user_id, participant.last_read_at)
    return dto


@router.get("/{conversation_id}/unread-count", response_model=UnreadCountDto)
async def get_unread_count(
    conversation_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
    settings: Settings = Depends(get_app_settings),
):
    count = await with_store_timeout(service.unread_count(conversation_id, user_id), settings)
    return UnreadCountDto(conversation_id=conversation_id, unread_count=count)
