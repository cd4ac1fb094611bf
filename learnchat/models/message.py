from dataclasses import dataclass
from datetime import datetime
from typing import Union
from sqlalchemy import Column, String, Text, Enum, ForeignKey, Uuid, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship
import uuid
import enum
from learnchat.database import Base, Timestamp, utcnow

DELETED_PLACEHOLDER = "[Message deleted]"


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class Deleted:
    at: datetime


MessageState = Union[Active, Deleted]


class Message(Base):
    """Message in a conversation. Deletion is soft; the stored content is kept."""
    __tablename__ = "message"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversation.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(Uuid, nullable=False)
    content = Column(Text, nullable=False)
    type = Column(Enum(MessageType), nullable=False, default=MessageType.TEXT)
    attachments = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=True)
    reply_to_id = Column(Uuid, ForeignKey("message.id"), nullable=True)
    created_at = Column(Timestamp, default=utcnow, nullable=False)
    updated_at = Column(Timestamp, default=utcnow, onupdate=utcnow, nullable=False)
    edited_at = Column(Timestamp, nullable=True)
    deleted_at = Column(Timestamp, nullable=True)

    # Timeline order is (created_at, id)
    __table_args__ = (
        Index("ix_message_conversation_created", "conversation_id", "created_at", "id"),
    )

    reactions = relationship(
        "MessageReaction",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MessageReaction.created_at",
    )
    reads = relationship(
        "MessageRead",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def state(self) -> MessageState:
        if self.deleted_at is not None:
            return Deleted(at=self.deleted_at)
        return Active()

    @property
    def visible_content(self) -> str:
        if isinstance(self.state, Deleted):
            return DELETED_PLACEHOLDER
        return self.content

    def reaction_map(self) -> dict[str, list[str]]:
        """emoji -> user ids, in first-reaction order."""
        out: dict[str, list[str]] = {}
        for reaction in self.reactions:
            out.setdefault(reaction.emoji, []).append(str(reaction.user_id))
        return out


class MessageReaction(Base):
    __tablename__ = "message_reaction"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id = Column(Uuid, ForeignKey("message.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, nullable=False)
    emoji = Column(String(32), nullable=False)
    created_at = Column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="unique_message_reaction"),
    )

    message = relationship("Message", back_populates="reactions")


class MessageRead(Base):
    """Per-message read receipt, kept alongside the participant's last_read_at watermark."""
    __tablename__ = "message_read"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id = Column(Uuid, ForeignKey("message.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, nullable=False)
    read_at = Column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="unique_message_read"),
    )

    message = relationship("Message", back_populates="reads")
