from sqlalchemy import Column, Boolean, Enum, ForeignKey, Uuid, UniqueConstraint, Index
from sqlalchemy.orm import relationship
import uuid
import enum
from learnchat.database import Base, Timestamp, utcnow


class ParticipantRole(str, enum.Enum):
    OWNER = "owner"
    MEMBER = "member"


class Participant(Base):
    """Membership of a user in a conversation. Rows are never deleted; leaving stamps left_at."""
    __tablename__ = "participant"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversation.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, nullable=False)
    role = Column(Enum(ParticipantRole), nullable=False, default=ParticipantRole.MEMBER)
    joined_at = Column(Timestamp, default=utcnow, nullable=False)
    left_at = Column(Timestamp, nullable=True)
    last_read_at = Column(Timestamp, nullable=True)
    is_muted = Column(Boolean, default=False, nullable=False)

    # One membership row per (conversation, user); re-joining reuses it
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="unique_conversation_participant"),
        Index("ix_participant_user_id", "user_id"),
    )

    conversation = relationship("Conversation", back_populates="participants")

    @property
    def is_active(self) -> bool:
        return self.left_at is None
