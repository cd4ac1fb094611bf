from sqlalchemy import Column, String, Enum, Uuid, Index
from sqlalchemy.orm import relationship
import uuid
import enum
from learnchat.database import Base, Timestamp, utcnow


class ConversationType(str, enum.Enum):
    DIRECT = "direct"
    GROUP = "group"


def make_direct_key(first_user_id: uuid.UUID, second_user_id: uuid.UUID) -> str:
    """Order-independent key for the member pair of a direct conversation."""
    a, b = sorted((str(first_user_id), str(second_user_id)))
    return f"{a}:{b}"


class Conversation(Base):
    """A direct or group conversation with an ordered message history."""
    __tablename__ = "conversation"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(Enum(ConversationType), nullable=False)
    name = Column(String(100), nullable=True)
    description = Column(String(500), nullable=True)
    created_by = Column(Uuid, nullable=False)
    created_at = Column(Timestamp, default=utcnow, nullable=False)
    updated_at = Column(Timestamp, default=utcnow, nullable=False)
    deleted_at = Column(Timestamp, nullable=True)

    # "<uuid>:<uuid>" for direct conversations, NULL for groups. Unique so that a pair never gets two threads.
    direct_key = Column(String(73), unique=True, nullable=True)

    __table_args__ = (
        Index("ix_conversation_updated_at", "updated_at"),
    )

    participants = relationship(
        "Participant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Participant.joined_at",
    )

    @property
    def active_participants(self):
        return [p for p in self.participants if p.left_at is None]

    def participant_for(self, user_id: uuid.UUID):
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None
