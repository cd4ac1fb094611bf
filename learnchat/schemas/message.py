from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field, model_validator

from learnchat.models.message import Message, MessageType, Deleted
from learnchat.schemas.common import CamelModel, Pagination

MAX_CONTENT_LENGTH = 10_000


class Attachment(CamelModel):
    filename: str = Field(min_length=1, max_length=255)
    url: str = Field(min_length=1, max_length=2048)
    size: Optional[int] = Field(default=None, ge=0)
    mime_type: Optional[str] = Field(default=None, max_length=255)


class SendMessageRequest(CamelModel):
    conversation_id: Optional[UUID] = None
    receiver_id: Optional[UUID] = None
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH)
    type: MessageType = MessageType.TEXT
    attachments: List[Attachment] = Field(default_factory=list)
    reply_to_id: Optional[UUID] = None
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def check_single_target(self):
        if (self.conversation_id is None) == (self.receiver_id is None):
            raise ValueError("Exactly one of conversationId or receiverId must be provided")
        return self


class UpdateMessageRequest(CamelModel):
    content: Optional[str] = Field(default=None, min_length=1, max_length=MAX_CONTENT_LENGTH)
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def check_not_empty(self):
        if self.content is None and self.metadata is None:
            raise ValueError("Nothing to update")
        return self


class ReactionRequest(CamelModel):
    emoji: str = Field(min_length=1, max_length=32)


class MessageDto(CamelModel):
    id: UUID
    conversation_id: UUID
    sender_id: UUID
    content: str
    type: MessageType
    attachments: List[Attachment]
    metadata: Optional[Dict[str, Any]] = None
    reply_to_id: Optional[UUID] = None
    reactions: Dict[str, List[str]]
    read_by: List[str]
    is_edited: bool
    edited_at: Optional[datetime] = None
    is_deleted: bool
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class MessageListDto(CamelModel):
    messages: List[MessageDto]
    pagination: Pagination


def make_message_dto(msg: Message) -> MessageDto:
    deleted = isinstance(msg.state, Deleted)
    return MessageDto(
        id=msg.id,
        conversation_id=msg.conversation_id,
        sender_id=msg.sender_id,
        content=msg.visible_content,
        type=msg.type,
        attachments=[] if deleted else [Attachment.model_validate(a) for a in (msg.attachments or [])],
        metadata=None if deleted else msg.metadata_,
        reply_to_id=msg.reply_to_id,
        reactions=msg.reaction_map(),
        read_by=[str(r.user_id) for r in msg.reads],
        is_edited=msg.edited_at is not None,
        edited_at=msg.edited_at,
        is_deleted=deleted,
        deleted_at=msg.deleted_at,
        created_at=msg.created_at,
        updated_at=msg.updated_at,
    )
