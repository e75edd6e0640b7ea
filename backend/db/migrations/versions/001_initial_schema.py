"""Initial schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    # Slack teams
    op.create_table(
        'workspaces',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('slack_team_id', sa.String(50), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('domain', sa.String(255), nullable=True),
        sa.Column('bot_token', sa.Text(), nullable=True),
        sa.Column('bot_user_id', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slack_team_id', name='uq_workspaces_slack_team_id'),
    )

    # Archive users mirroring Slack users
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('slack_user_id', sa.String(50), nullable=True),
        sa.Column('workspace_id', sa.Uuid(), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('avatar_url', sa.String(512), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('token_scopes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['workspace_id'], ['workspaces.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slack_user_id', name='uq_users_slack_user_id'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('ix_users_workspace_id', 'users', ['workspace_id'])

    # Conversations, keyed by Slack's channel id
    op.create_table(
        'channels',
        sa.Column('id', sa.String(50), nullable=False),
        sa.Column('workspace_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('topic', sa.Text(), nullable=True),
        sa.Column('purpose', sa.Text(), nullable=True),
        sa.Column('is_private', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_dm', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_mpim', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('member_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['workspace_id'], ['workspaces.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_channels_workspace_id', 'channels', ['workspace_id'])

    # Membership pivot; active iff left_at IS NULL
    op.create_table(
        'channel_users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('channel_id', sa.String(50), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.Column('left_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('channel_id', 'user_id', name='uq_channel_users_channel_user'),
    )
    op.create_index('ix_channel_users_channel_id', 'channel_users', ['channel_id'])
    op.create_index('ix_channel_users_user_id', 'channel_users', ['user_id'])

    # Messages; slack_message_id is the Slack ts string
    op.create_table(
        'messages',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('slack_message_id', sa.String(32), nullable=False),
        sa.Column('workspace_id', sa.Uuid(), nullable=False),
        sa.Column('channel_id', sa.String(50), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.String(32), nullable=False),
        sa.Column('thread_ts', sa.String(32), nullable=True),
        sa.Column('reply_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subtype', sa.String(50), nullable=True),
        sa.Column('raw', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['workspace_id'], ['workspaces.id']),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('workspace_id', 'slack_message_id', name='uq_messages_workspace_slack_message'),
    )
    op.create_index('ix_messages_user_id', 'messages', ['user_id'])
    op.create_index('ix_messages_channel_timestamp', 'messages', ['channel_id', 'timestamp'])
    op.create_index('ix_messages_thread_ts', 'messages', ['channel_id', 'thread_ts'])

    # Archived attachments
    op.create_table(
        'slack_files',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('slack_file_id', sa.String(50), nullable=False),
        sa.Column('name', sa.String(512), nullable=False),
        sa.Column('title', sa.String(512), nullable=True),
        sa.Column('mimetype', sa.String(255), nullable=True),
        sa.Column('file_type', sa.String(20), nullable=False, server_default='other'),
        sa.Column('size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('url_private', sa.Text(), nullable=True),
        sa.Column('url_public', sa.Text(), nullable=True),
        sa.Column('is_public', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('storage_disk', sa.String(50), nullable=True),
        sa.Column('local_path', sa.Text(), nullable=True),
        sa.Column('thumbnail_path', JSON_TYPE, nullable=True),
        sa.Column('file_hash', sa.String(64), nullable=True),
        sa.Column('download_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('downloaded_at', sa.DateTime(), nullable=True),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('channel_id', sa.String(50), nullable=True),
        sa.Column('message_id', sa.Uuid(), nullable=True),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id']),
        sa.ForeignKeyConstraint(['message_id'], ['messages.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slack_file_id', name='uq_slack_files_slack_file_id'),
    )
    op.create_index('ix_slack_files_user_id', 'slack_files', ['user_id'])
    op.create_index('ix_slack_files_channel_id', 'slack_files', ['channel_id'])


def downgrade() -> None:
    op.drop_table('slack_files')
    op.drop_table('messages')
    op.drop_table('channel_users')
    op.drop_table('channels')
    op.drop_table('users')
    op.drop_table('workspaces')
