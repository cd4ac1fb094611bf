"""Create messaging tables

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

# Microsecond precision on MySQL keeps same-second messages ordered
Timestamp = sa.DateTime().with_variant(mysql.DATETIME(fsp=6), 'mysql')


def upgrade() -> None:
    # Conversation table
    op.create_table('conversation',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.Enum('DIRECT', 'GROUP', name='conversationtype'), nullable=False),
        sa.Column('name', sa.String(100), nullable=True),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=False),
        sa.Column('created_at', Timestamp, nullable=False),
        sa.Column('updated_at', Timestamp, nullable=False),
        sa.Column('deleted_at', Timestamp, nullable=True),
        sa.Column('direct_key', sa.String(73), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('direct_key')
    )
    op.create_index('ix_conversation_updated_at', 'conversation', ['updated_at'], unique=False)

    # Participant table
    op.create_table('participant',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('conversation_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('role', sa.Enum('OWNER', 'MEMBER', name='participantrole'), nullable=False),
        sa.Column('joined_at', Timestamp, nullable=False),
        sa.Column('left_at', Timestamp, nullable=True),
        sa.Column('last_read_at', Timestamp, nullable=True),
        sa.Column('is_muted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversation.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('conversation_id', 'user_id', name='unique_conversation_participant')
    )
    op.create_index('ix_participant_user_id', 'participant', ['user_id'], unique=False)

    # Message table
    op.create_table('message',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('conversation_id', sa.Uuid(), nullable=False),
        sa.Column('sender_id', sa.Uuid(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('type', sa.Enum('TEXT', 'IMAGE', 'FILE', 'SYSTEM', name='messagetype'), nullable=False),
        sa.Column('attachments', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('reply_to_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', Timestamp, nullable=False),
        sa.Column('updated_at', Timestamp, nullable=False),
        sa.Column('edited_at', Timestamp, nullable=True),
        sa.Column('deleted_at', Timestamp, nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversation.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['reply_to_id'], ['message.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_message_conversation_created', 'message', ['conversation_id', 'created_at', 'id'], unique=False)

    # Reactions
    op.create_table('message_reaction',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('message_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('emoji', sa.String(32), nullable=False),
        sa.Column('created_at', Timestamp, nullable=False),
        sa.ForeignKeyConstraint(['message_id'], ['message.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', 'user_id', 'emoji', name='unique_message_reaction')
    )

    # Read receipts
    op.create_table('message_read',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('message_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('read_at', Timestamp, nullable=False),
        sa.ForeignKeyConstraint(['message_id'], ['message.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', 'user_id', name='unique_message_read')
    )


def downgrade() -> None:
    op.drop_table('message_read')
    op.drop_table('message_reaction')
    op.drop_index('ix_message_conversation_created', table_name='message')
    op.drop_table('message')
    op.drop_index('ix_participant_user_id', table_name='participant')
    op.drop_table('participant')
    op.drop_index('ix_conversation_updated_at', table_name='conversation')
    op.drop_table('conversation')
