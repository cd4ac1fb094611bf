from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import Field, model_validator

from learnchat.models.conversation import Conversation, ConversationType
from learnchat.models.participant import Participant, ParticipantRole
from learnchat.models.message import Message
from learnchat.schemas.common import CamelModel, Pagination
from learnchat.schemas.message import MessageDto, make_message_dto


class CreateConversationRequest(CamelModel):
    type: ConversationType
    participant_ids: List[UUID] = Field(min_length=1)
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class UpdateConversationRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def check_not_empty(self):
        if self.name is None and self.description is None:
            raise ValueError("Nothing to update")
        return self


class AddParticipantsRequest(CamelModel):
    user_ids: List[UUID] = Field(min_length=1, max_length=100)


class MuteRequest(CamelModel):
    muted: bool


class ParticipantDto(CamelModel):
    user_id: UUID
    role: ParticipantRole
    joined_at: datetime
    left_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None
    is_muted: bool


class ConversationDto(CamelModel):
    id: UUID
    type: ConversationType
    name: Optional[str] = None
    description: Optional[str] = None
    created_by: UUID
    participant_ids: List[UUID]
    participants: List[ParticipantDto]
    last_message: Optional[MessageDto] = None
    unread_count: int = 0
    created_at: datetime
    updated_at: datetime


class ConversationListDto(CamelModel):
    conversations: List[ConversationDto]
    pagination: Pagination


class ReadStateDto(CamelModel):
    conversation_id: UUID
    user_id: UUID
    last_read_at: Optional[datetime] = None
    unread_count: int


class UnreadCountDto(CamelModel):
    conversation_id: UUID
    unread_count: int


def make_participant_dto(participant: Participant) -> ParticipantDto:
    return ParticipantDto(
        user_id=participant.user_id,
        role=participant.role,
        joined_at=participant.joined_at,
        left_at=participant.left_at,
        last_read_at=participant.last_read_at,
        is_muted=participant.is_muted,
    )


def make_conversation_dto(
    conversation: Conversation,
    last_message: Optional[Message] = None,
    unread_count: int = 0,
) -> ConversationDto:
    active = conversation.active_participants
    return ConversationDto(
        id=conversation.id,
        type=conversation.type,
        name=conversation.name,
        description=conversation.description,
        created_by=conversation.created_by,
        participant_ids=[p.user_id for p in active],
        participants=[make_participant_dto(p) for p in active],
        last_message=make_message_dto(last_message) if last_message else None,
        unread_count=unread_count,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )
