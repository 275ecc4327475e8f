"""chat schema

Revision ID: 20261018_001
Revises:
Create Date: 2026-10-18

Creates the chat tables together with the minimal users and listings tables
they reference. Deployments that already own users/listings should stamp
past this revision and create only the chat tables.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261018_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(50), nullable=False),
        sa.Column('display_name', sa.String(100), nullable=True),
        sa.Column('avatar_url', sa.String(500), nullable=True),
        sa.Column('role', sa.String(20), server_default='BUYER', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('is_verified', sa.Boolean(), server_default=sa.false(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    op.create_table(
        'listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(20), server_default='ACTIVE', nullable=False),
        sa.Column('primary_image_url', sa.String(500), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_listings_vendor_id', 'listings', ['vendor_id'])

    # Chats - one buyer/vendor thread per listing (or per vendor profile)
    op.create_table(
        'chats',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(20), server_default='ACTIVE', nullable=False),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('listing_id', 'buyer_id', 'vendor_id', name='uq_chats_listing_participants'),
        sa.CheckConstraint('buyer_id <> vendor_id', name='ck_chats_distinct_participants'),
    )
    op.create_index('ix_chats_listing_id', 'chats', ['listing_id'])
    op.create_index('ix_chats_buyer_updated', 'chats', ['buyer_id', 'updated_at'])
    op.create_index('ix_chats_vendor_updated', 'chats', ['vendor_id', 'updated_at'])
    op.create_index(
        'uq_chats_vendor_profile_pair',
        'chats',
        ['buyer_id', 'vendor_id'],
        unique=True,
        postgresql_where=sa.text('listing_id IS NULL'),
        sqlite_where=sa.text('listing_id IS NULL'),
    )

    # Chat messages - text, images, system notices, offers and offer responses
    op.create_table(
        'chat_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('chat_id', sa.Integer(), sa.ForeignKey('chats.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sender_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message_type', sa.String(20), server_default='TEXT', nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('offer_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('offer_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_read', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('edited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reply_to_id', sa.Integer(), sa.ForeignKey('chat_messages.id', ondelete='SET NULL'), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_chat_messages_chat_created', 'chat_messages', ['chat_id', 'created_at'])
    op.create_index('ix_chat_messages_reply_to', 'chat_messages', ['reply_to_id'])
    op.create_index('ix_chat_messages_sender_id', 'chat_messages', ['sender_id'])


def downgrade() -> None:
    op.drop_index('ix_chat_messages_sender_id', table_name='chat_messages')
    op.drop_index('ix_chat_messages_reply_to', table_name='chat_messages')
    op.drop_index('ix_chat_messages_chat_created', table_name='chat_messages')
    op.drop_table('chat_messages')

    op.drop_index('uq_chats_vendor_profile_pair', table_name='chats')
    op.drop_index('ix_chats_vendor_updated', table_name='chats')
    op.drop_index('ix_chats_buyer_updated', table_name='chats')
    op.drop_index('ix_chats_listing_id', table_name='chats')
    op.drop_table('chats')

    op.drop_index('ix_listings_vendor_id', table_name='listings')
    op.drop_table('listings')

    op.drop_index('ix_users_username', table_name='users')
    op.drop_table('users')
