from learnchat.models.conversation import Conversation, ConversationType
from learnchat.models.participant import Participant, ParticipantRole
from learnchat.models.message import Message, MessageType, MessageReaction, MessageRead

__all__ = [
	"Conversation",
	"ConversationType",
	"Participant",
	"ParticipantRole",
	"Message",
	"MessageType",
	"MessageReaction",
	"MessageRead",
]
