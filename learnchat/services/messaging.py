"""
Conversation and message lifecycle.

The service is stateless between calls: it is built per request around an
AsyncSession and commits its own unit of work. Membership, reaction and read
receipt writes are single atomic upserts keyed on their unique constraints, so
concurrent callers converge on one row instead of racing a check-then-insert.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import and_, case, delete, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from learnchat.database import utcnow
from learnchat.errors import Conflict, NotFound, PermissionDenied, ValidationError
from learnchat.models.conversation import Conversation, ConversationType, make_direct_key
from learnchat.models.participant import Participant, ParticipantRole
from learnchat.models.message import Message, MessageReaction, MessageRead, MessageType
from learnchat.schemas.message import MAX_CONTENT_LENGTH

logger = logging.getLogger(__name__)


@dataclass
class SentMessage:
    message: Message
    conversation: Conversation
    conversation_created: bool = False


@dataclass
class ConversationSummary:
    conversation: Conversation
    last_message: Optional[Message]
    unread_count: int


def _dedupe(ids: Iterable[UUID]) -> List[UUID]:
    seen = set()
    out = []
    for user_id in ids:
        if user_id not in seen:
            seen.add(user_id)
            out.append(user_id)
    return out


def _dialect_insert(dialect_name: str):
    if dialect_name == "mysql":
        from sqlalchemy.dialects.mysql import insert
    elif dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


class MessagingService:
    def __init__(self, db: AsyncSession):
        self.db = db

    @property
    def _dialect(self) -> str:
        return self.db.get_bind().dialect.name

    # ===========================================
    # Loading and access checks
    # ===========================================

    async def _load_conversation(self, conversation_id: UUID, include_deleted: bool = False) -> Optional[Conversation]:
        stmt = (
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        if not include_deleted:
            stmt = stmt.where(Conversation.deleted_at.is_(None))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = await self._load_conversation(conversation_id)
        if not conversation:
            raise NotFound("Conversation not found")
        return conversation

    async def _require_reader(self, conversation_id: UUID, user_id: UUID) -> tuple[Conversation, Participant]:
        """Current or past participants may read; everyone else gets NotFound."""
        conversation = await self._get_conversation(conversation_id)
        participant = conversation.participant_for(user_id)
        if participant is None:
            raise NotFound("Conversation not found")
        return conversation, participant

    async def _require_active(self, conversation_id: UUID, user_id: UUID) -> tuple[Conversation, Participant]:
        conversation = await self._get_conversation(conversation_id)
        participant = conversation.participant_for(user_id)
        if participant is None or not participant.is_active:
            raise PermissionDenied("You are not a participant in this conversation")
        return conversation, participant

    @staticmethod
    def _require_manager(conversation: Conversation, user_id: UUID) -> None:
        """The creator or an owner, and only while still an active member."""
        participant = conversation.participant_for(user_id)
        if participant is None or not participant.is_active:
            raise PermissionDenied("Only the conversation owner can do this")
        if conversation.created_by == user_id or participant.role == ParticipantRole.OWNER:
            return
        raise PermissionDenied("Only the conversation owner can do this")

    async def _load_message(self, message_id: UUID) -> Optional[Message]:
        stmt = (
            select(Message)
            .where(Message.id == message_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_live_message(self, message_id: UUID) -> tuple[Message, Conversation]:
        """A message that has not been deleted, in a conversation that has not been deleted."""
        message = await self._load_message(message_id)
        if message is None or message.deleted_at is not None:
            raise NotFound("Message not found")
        conversation = await self._load_conversation(message.conversation_id)
        if conversation is None:
            raise NotFound("Message not found")
        return message, conversation

    @staticmethod
    def _visible_until(participant: Participant) -> Optional[datetime]:
        # Past participants keep read access to history up to the moment they left
        return participant.left_at

    # ===========================================
    # Atomic writes
    # ===========================================

    async def _upsert_participant(self, conversation_id: UUID, user_id: UUID, role: ParticipantRole, now: datetime) -> None:
        """Insert the membership row or reactivate it in a single statement.

        An active member keeps its role and join time; a member who had left is
        re-joined with the given role.
        """
        insert = _dialect_insert(self._dialect)
        stmt = insert(Participant).values(
            conversation_id=conversation_id,
            user_id=user_id,
            role=role,
            joined_at=now,
            left_at=None,
            is_muted=False,
        )
        role_type = Participant.__table__.c.role.type
        # role and joined_at are evaluated against the pre-update left_at (MySQL applies assignments in order)
        changes = {
            "role": case(
                (Participant.left_at.is_(None), Participant.role),
                else_=literal(role, role_type),
            ),
            "joined_at": case(
                (Participant.left_at.is_(None), Participant.joined_at),
                else_=literal(now, Participant.__table__.c.joined_at.type),
            ),
            "left_at": None,
        }
        if self._dialect == "mysql":
            stmt = stmt.on_duplicate_key_update(**changes)
        else:
            stmt = stmt.on_conflict_do_update(index_elements=["conversation_id", "user_id"], set_=changes)
        await self.db.execute(stmt)

    async def _insert_ignore(self, model, index_elements: List[str], **values) -> None:
        insert = _dialect_insert(self._dialect)
        stmt = insert(model).values(**values)
        if self._dialect == "mysql":
            stmt = stmt.on_duplicate_key_update(id=model.__table__.c.id)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
        await self.db.execute(stmt)

    async def _touch_conversation(self, conversation_id: UUID, now: datetime) -> None:
        await self.db.execute(
            update(Conversation).where(Conversation.id == conversation_id).values(updated_at=now)
        )

    # ===========================================
    # Conversations
    # ===========================================

    async def create_conversation(
        self,
        requester_id: UUID,
        type: ConversationType,
        participant_ids: Iterable[UUID],
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> tuple[Conversation, bool]:
        """Create a conversation. Returns (conversation, created).

        Direct conversations are unique per member pair: asking again returns the
        existing one with created=False.
        """
        members = _dedupe(participant_ids)
        if requester_id not in members:
            members.append(requester_id)

        if len(members) < 2:
            raise ValidationError("A conversation must have at least 2 participants")

        if type == ConversationType.DIRECT:
            if len(members) != 2:
                raise ValidationError("Direct conversations must have exactly 2 participants")
            return await self._get_or_create_direct(requester_id, members)

        if not name or not name.strip():
            raise ValidationError("Group conversations must have a name")

        now = utcnow()
        conversation = Conversation(
            type=ConversationType.GROUP,
            name=name.strip(),
            description=description,
            created_by=requester_id,
            created_at=now,
            updated_at=now,
        )
        conversation.participants = [
            Participant(
                user_id=user_id,
                role=ParticipantRole.OWNER if user_id == requester_id else ParticipantRole.MEMBER,
                joined_at=now,
            )
            for user_id in members
        ]
        self.db.add(conversation)
        await self.db.commit()
        logger.info(f"Group conversation {conversation.id} created by {requester_id} with {len(members)} members")
        return await self._get_conversation(conversation.id), True

    async def _find_direct(self, direct_key: str) -> Optional[Conversation]:
        stmt = (
            select(Conversation)
            .where(Conversation.direct_key == direct_key)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _reactivate_direct(self, conversation: Conversation, requester_id: UUID, members: List[UUID]) -> Conversation:
        inactive = [
            user_id for user_id in members
            if conversation.participant_for(user_id) is None or not conversation.participant_for(user_id).is_active
        ]
        if conversation.deleted_at is None and not inactive:
            return conversation

        now = utcnow()
        for user_id in members:
            role = ParticipantRole.OWNER if user_id == requester_id else ParticipantRole.MEMBER
            await self._upsert_participant(conversation.id, user_id, role, now)
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(deleted_at=None, updated_at=now)
        )
        await self.db.commit()
        logger.info(f"Direct conversation {conversation.id} reactivated by {requester_id}")
        return await self._load_conversation(conversation.id)

    async def _get_or_create_direct(self, requester_id: UUID, members: List[UUID]) -> tuple[Conversation, bool]:
        direct_key = make_direct_key(members[0], members[1])

        existing = await self._find_direct(direct_key)
        if existing is not None:
            return await self._reactivate_direct(existing, requester_id, members), False

        now = utcnow()
        conversation = Conversation(
            type=ConversationType.DIRECT,
            created_by=requester_id,
            direct_key=direct_key,
            created_at=now,
            updated_at=now,
        )
        conversation.participants = [
            Participant(
                user_id=user_id,
                role=ParticipantRole.OWNER if user_id == requester_id else ParticipantRole.MEMBER,
                joined_at=now,
            )
            for user_id in members
        ]
        self.db.add(conversation)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another request created the same pair first; converge on its row
            await self.db.rollback()
            logger.info(f"Direct conversation {direct_key} was created concurrently, reusing it")
            existing = await self._find_direct(direct_key)
            if existing is None:
                raise Conflict("Direct conversation could not be created, please retry")
            return await self._reactivate_direct(existing, requester_id, members), False

        logger.info(f"Direct conversation {conversation.id} created by {requester_id}")
        return await self._get_conversation(conversation.id), True

    async def get_conversations(
        self,
        user_id: UUID,
        type: Optional[ConversationType] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[List[ConversationSummary], int]:
        """Conversations the user is an active member of, most recently active first."""
        stmt = (
            select(Conversation)
            .join(
                Participant,
                and_(
                    Participant.conversation_id == Conversation.id,
                    Participant.user_id == user_id,
                    Participant.left_at.is_(None),
                ),
            )
            .where(Conversation.deleted_at.is_(None))
        )
        if type is not None:
            stmt = stmt.where(Conversation.type == type)
        if search:
            needle = search.lower()
            stmt = stmt.where(
                or_(
                    func.lower(Conversation.name).contains(needle, autoescape=True),
                    func.lower(Conversation.description).contains(needle, autoescape=True),
                )
            )

        total = await self.db.scalar(select(func.count()).select_from(stmt.subquery()))

        stmt = (
            stmt.order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        conversations = result.scalars().all()

        summaries = []
        for conversation in conversations:
            participant = conversation.participant_for(user_id)
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    last_message=await self._last_message(conversation.id, participant),
                    unread_count=await self._count_unread(conversation.id, participant),
                )
            )
        return summaries, total or 0

    async def get_conversation(self, conversation_id: UUID, user_id: UUID) -> ConversationSummary:
        conversation, participant = await self._require_reader(conversation_id, user_id)
        return ConversationSummary(
            conversation=conversation,
            last_message=await self._last_message(conversation.id, participant),
            unread_count=await self._count_unread(conversation.id, participant),
        )

    async def update_conversation(
        self,
        conversation_id: UUID,
        user_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Conversation:
        conversation = await self._get_conversation(conversation_id)
        self._require_manager(conversation, user_id)

        if name is not None:
            if not name.strip():
                raise ValidationError("Conversation name cannot be empty")
            conversation.name = name.strip()
        if description is not None:
            conversation.description = description
        conversation.updated_at = utcnow()
        await self.db.commit()
        return await self._get_conversation(conversation_id)

    async def delete_conversation(self, conversation_id: UUID, user_id: UUID) -> tuple[Conversation, List[UUID]]:
        """Soft delete: stamp deleted_at and mark every active member as left.

        Returns the conversation and the ids of the members that were active.
        """
        conversation = await self._get_conversation(conversation_id)
        self._require_manager(conversation, user_id)

        members = [p.user_id for p in conversation.active_participants]
        now = utcnow()
        await self.db.execute(
            update(Participant)
            .where(Participant.conversation_id == conversation_id, Participant.left_at.is_(None))
            .values(left_at=now)
        )
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(deleted_at=now, updated_at=now)
        )
        await self.db.commit()
        logger.info(f"Conversation {conversation_id} deleted by {user_id}")
        return await self._load_conversation(conversation_id, include_deleted=True), members

    # ===========================================
    # Participants
    # ===========================================

    async def add_participants(self, conversation_id: UUID, requester_id: UUID, user_ids: Iterable[UUID]) -> List[Participant]:
        conversation, _ = await self._require_active(conversation_id, requester_id)
        targets = _dedupe(user_ids)
        if not targets:
            raise ValidationError("No participants given")

        if conversation.type == ConversationType.DIRECT:
            pair = {p.user_id for p in conversation.participants}
            if any(user_id not in pair for user_id in targets):
                raise ValidationError("Direct conversations cannot have more than 2 participants")

        now = utcnow()
        for user_id in targets:
            await self._upsert_participant(conversation_id, user_id, ParticipantRole.MEMBER, now)
        await self._touch_conversation(conversation_id, now)
        await self.db.commit()
        logger.info(f"Participants {[str(u) for u in targets]} added to {conversation_id} by {requester_id}")

        conversation = await self._get_conversation(conversation_id)
        return [conversation.participant_for(user_id) for user_id in targets]

    async def remove_participant(self, conversation_id: UUID, requester_id: UUID, target_user_id: UUID) -> Participant:
        conversation = await self._get_conversation(conversation_id)
        if requester_id != target_user_id:
            self._require_manager(conversation, requester_id)

        target = conversation.participant_for(target_user_id)
        if target is None or not target.is_active:
            raise NotFound("Participant not found")

        now = utcnow()
        await self.db.execute(
            update(Participant)
            .where(Participant.id == target.id, Participant.left_at.is_(None))
            .values(left_at=now)
        )
        await self._touch_conversation(conversation_id, now)
        await self.db.commit()
        logger.info(f"Participant {target_user_id} removed from {conversation_id} by {requester_id}")

        conversation = await self._load_conversation(conversation_id)
        return conversation.participant_for(target_user_id)

    async def set_muted(self, conversation_id: UUID, user_id: UUID, muted: bool) -> Participant:
        """Muted members still receive conversation events but no notifications."""
        _, participant = await self._require_active(conversation_id, user_id)
        await self.db.execute(
            update(Participant).where(Participant.id == participant.id).values(is_muted=muted)
        )
        await self.db.commit()

        conversation = await self._get_conversation(conversation_id)
        return conversation.participant_for(user_id)

    async def active_conversation_ids(self, user_id: UUID) -> List[UUID]:
        stmt = (
            select(Participant.conversation_id)
            .join(Conversation, Conversation.id == Participant.conversation_id)
            .where(
                Participant.user_id == user_id,
                Participant.left_at.is_(None),
                Conversation.deleted_at.is_(None),
            )
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def is_active_participant(self, conversation_id: UUID, user_id: UUID) -> bool:
        stmt = (
            select(Participant.id)
            .join(Conversation, Conversation.id == Participant.conversation_id)
            .where(
                Participant.conversation_id == conversation_id,
                Participant.user_id == user_id,
                Participant.left_at.is_(None),
                Conversation.deleted_at.is_(None),
            )
        )
        return await self.db.scalar(stmt) is not None

    # ===========================================
    # Messages
    # ===========================================

    async def send_message(
        self,
        sender_id: UUID,
        content: str,
        conversation_id: Optional[UUID] = None,
        receiver_id: Optional[UUID] = None,
        type: MessageType = MessageType.TEXT,
        attachments: Optional[List[Dict[str, Any]]] = None,
        reply_to_id: Optional[UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SentMessage:
        """Persist a message into an existing conversation or into the direct
        conversation with receiver_id, creating that conversation when needed."""
        if (conversation_id is None) == (receiver_id is None):
            raise ValidationError("Exactly one of conversationId or receiverId must be provided")
        if not content or len(content) > MAX_CONTENT_LENGTH:
            raise ValidationError(f"Message content must be between 1 and {MAX_CONTENT_LENGTH} characters")

        conversation_created = False
        if receiver_id is not None:
            if receiver_id == sender_id:
                raise ValidationError("Cannot send a direct message to yourself")
            conversation, conversation_created = await self.create_conversation(
                sender_id, ConversationType.DIRECT, [sender_id, receiver_id]
            )
            conversation_id = conversation.id

        conversation, _ = await self._require_active(conversation_id, sender_id)

        if reply_to_id is not None:
            reply_to = await self.db.get(Message, reply_to_id)
            if reply_to is None or reply_to.conversation_id != conversation.id:
                raise ValidationError("replyToId must reference a message in the same conversation")

        now = utcnow()
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            content=content,
            type=type,
            attachments=attachments or [],
            metadata_=metadata,
            reply_to_id=reply_to_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(message)
        # Same unit of work as the insert: drives recency ordering of the conversation list
        await self._touch_conversation(conversation.id, now)
        await self.db.commit()
        logger.info(f"Message {message.id} sent to {conversation.id} by {sender_id}")

        return SentMessage(
            message=await self._load_message(message.id),
            conversation=await self._get_conversation(conversation.id),
            conversation_created=conversation_created,
        )

    async def get_messages(
        self,
        conversation_id: UUID,
        user_id: UUID,
        offset: int = 0,
        limit: int = 50,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> tuple[List[Message], int]:
        """A page of history in (created_at, id) order. Offset 0 starts at the newest messages."""
        _, participant = await self._require_reader(conversation_id, user_id)

        conditions = [Message.conversation_id == conversation_id]
        visible_until = self._visible_until(participant)
        if visible_until is not None:
            conditions.append(Message.created_at <= visible_until)
        if before is not None:
            conditions.append(Message.created_at < before)
        if after is not None:
            conditions.append(Message.created_at > after)

        total = await self.db.scalar(select(func.count(Message.id)).where(*conditions))

        stmt = (
            select(Message)
            .where(*conditions)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        messages = list(result.scalars().all())
        messages.reverse()
        return messages, total or 0

    async def get_message(self, message_id: UUID, user_id: UUID) -> Message:
        message = await self._load_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        _, participant = await self._require_reader(message.conversation_id, user_id)
        visible_until = self._visible_until(participant)
        if visible_until is not None and message.created_at > visible_until:
            raise NotFound("Message not found")
        return message

    async def update_message(
        self,
        message_id: UUID,
        user_id: UUID,
        content: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        message, _ = await self._get_live_message(message_id)
        if message.sender_id != user_id:
            raise PermissionDenied("Only the sender can edit this message")
        if content is None and metadata is None:
            raise ValidationError("Nothing to update")
        if content is not None:
            if not content or len(content) > MAX_CONTENT_LENGTH:
                raise ValidationError(f"Message content must be between 1 and {MAX_CONTENT_LENGTH} characters")
            message.content = content
        if metadata is not None:
            message.metadata_ = metadata
        message.edited_at = utcnow()
        await self.db.commit()
        return await self._load_message(message_id)

    async def delete_message(self, message_id: UUID, user_id: UUID) -> Message:
        message, _ = await self._get_live_message(message_id)
        if message.sender_id != user_id:
            raise PermissionDenied("Only the sender can delete this message")
        message.deleted_at = utcnow()
        await self.db.commit()
        logger.info(f"Message {message_id} deleted by {user_id}")
        return await self._load_message(message_id)

    # ===========================================
    # Read state
    # ===========================================

    async def _count_unread(self, conversation_id: UUID, participant: Participant) -> int:
        conditions = [
            Message.conversation_id == conversation_id,
            Message.sender_id != participant.user_id,
            Message.deleted_at.is_(None),
        ]
        if participant.last_read_at is not None:
            conditions.append(Message.created_at > participant.last_read_at)
        visible_until = self._visible_until(participant)
        if visible_until is not None:
            conditions.append(Message.created_at <= visible_until)
        return await self.db.scalar(select(func.count(Message.id)).where(*conditions)) or 0

    async def _last_message(self, conversation_id: UUID, participant: Participant) -> Optional[Message]:
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        visible_until = self._visible_until(participant)
        if visible_until is not None:
            stmt = stmt.where(Message.created_at <= visible_until)
        stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(1)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def unread_count(self, conversation_id: UUID, user_id: UUID) -> int:
        _, participant = await self._require_reader(conversation_id, user_id)
        return await self._count_unread(conversation_id, participant)

    async def mark_as_read(self, conversation_id: UUID, user_id: UUID) -> tuple[Participant, int]:
        """Advance the member's read watermark to now. The watermark never moves backwards."""
        _, participant = await self._require_active(conversation_id, user_id)

        now = utcnow()
        await self.db.execute(
            update(Participant)
            .where(
                Participant.id == participant.id,
                or_(Participant.last_read_at.is_(None), Participant.last_read_at < now),
            )
            .values(last_read_at=now)
        )
        await self.db.commit()

        conversation = await self._get_conversation(conversation_id)
        participant = conversation.participant_for(user_id)
        return participant, await self._count_unread(conversation_id, participant)

    async def mark_message_as_read(self, message_id: UUID, user_id: UUID) -> Message:
        message, conversation = await self._get_live_message(message_id)
        await self._require_active(conversation.id, user_id)

        await self._insert_ignore(
            MessageRead,
            ["message_id", "user_id"],
            message_id=message_id,
            user_id=user_id,
            read_at=utcnow(),
        )
        await self.db.commit()
        return await self._load_message(message_id)

    # ===========================================
    # Reactions
    # ===========================================

    async def add_reaction(self, message_id: UUID, user_id: UUID, emoji: str) -> Message:
        emoji = emoji.strip()
        if not emoji:
            raise ValidationError("Emoji is required")
        message, conversation = await self._get_live_message(message_id)
        await self._require_active(conversation.id, user_id)

        await self._insert_ignore(
            MessageReaction,
            ["message_id", "user_id", "emoji"],
            message_id=message_id,
            user_id=user_id,
            emoji=emoji,
            created_at=utcnow(),
        )
        await self.db.commit()
        return await self._load_message(message_id)

    async def remove_reaction(self, message_id: UUID, user_id: UUID, emoji: str) -> Message:
        emoji = emoji.strip()
        message, conversation = await self._get_live_message(message_id)
        await self._require_active(conversation.id, user_id)

        await self.db.execute(
            delete(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )
        await self.db.commit()
        return await self._load_message(message_id)

    # ===========================================
    # Search
    # ===========================================

    async def search_messages(
        self,
        user_id: UUID,
        query: str,
        conversation_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Message]:
        """Case-insensitive substring search over conversations the user is or was part of."""
        needle = (query or "").strip().lower()
        if not needle:
            raise ValidationError("Search query is required")

        stmt = (
            select(Participant)
            .join(Conversation, Conversation.id == Participant.conversation_id)
            .where(Participant.user_id == user_id, Conversation.deleted_at.is_(None))
        )
        if conversation_id is not None:
            stmt = stmt.where(Participant.conversation_id == conversation_id)
        memberships = (await self.db.execute(stmt)).scalars().all()

        if not memberships:
            if conversation_id is not None:
                raise NotFound("Conversation not found")
            return []

        scopes = []
        for membership in memberships:
            visible_until = self._visible_until(membership)
            if visible_until is None:
                scopes.append(Message.conversation_id == membership.conversation_id)
            else:
                scopes.append(and_(
                    Message.conversation_id == membership.conversation_id,
                    Message.created_at <= visible_until,
                ))

        stmt = (
            select(Message)
            .where(
                or_(*scopes),
                Message.deleted_at.is_(None),
                func.lower(Message.content).contains(needle, autoescape=True),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
