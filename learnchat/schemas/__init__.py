from learnchat.schemas.common import CamelModel, Pagination
from learnchat.schemas.message import (
    Attachment, SendMessageRequest, UpdateMessageRequest, ReactionRequest,
    MessageDto, MessageListDto, make_message_dto,
)
from learnchat.schemas.conversation import (
    CreateConversationRequest, UpdateConversationRequest, AddParticipantsRequest, MuteRequest,
    ParticipantDto, ConversationDto, ConversationListDto, ReadStateDto, UnreadCountDto,
    make_participant_dto, make_conversation_dto,
)

__all__ = [
    "CamelModel", "Pagination",
    "Attachment", "SendMessageRequest", "UpdateMessageRequest", "ReactionRequest",
    "MessageDto", "MessageListDto", "make_message_dto",
    "CreateConversationRequest", "UpdateConversationRequest", "AddParticipantsRequest", "MuteRequest",
    "ParticipantDto", "ConversationDto", "ConversationListDto", "ReadStateDto", "UnreadCountDto",
    "make_participant_dto", "make_conversation_dto",
]
