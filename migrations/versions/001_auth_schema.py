"""Users, passkeys, invites, setup claims and HTTP sessions

Revision ID: 001
Revises: 
Create Date: 2026-10-18

Accounts exist only through passkeys; there are no passwords.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # === USERS ===
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('is_admin', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # === USER PASSKEYS ===
    op.create_table(
        'user_passkeys',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.Uuid(as_uuid=True),
                  sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('credential_id', sa.LargeBinary, nullable=False, unique=True),
        sa.Column('credential_data', sa.LargeBinary, nullable=False),
        sa.Column('sign_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('label', sa.String(255)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_used_at', sa.DateTime(timezone=True)),
        sa.CheckConstraint('sign_count >= 0', name='chk_user_passkeys_sign_count'),
    )
    op.create_index('ix_user_passkeys_user_id', 'user_passkeys', ['user_id'])
    op.create_index('ix_user_passkeys_last_used_at', 'user_passkeys', ['last_used_at'])

    # === USER INVITES ===
    op.create_table(
        'user_invites',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('token', sa.String(64), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255)),
        sa.Column('created_by', sa.Uuid(as_uuid=True),
                  sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('used_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_user_invites_created_at', 'user_invites', ['created_at'])
    op.create_index('ix_user_invites_used_at', 'user_invites', ['used_at'])

    # === SETUP CLAIMS ===
    op.create_table(
        'setup_claims',
        sa.Column('kind', sa.String(32), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # === HTTP SESSIONS ===
    op.create_table(
        'http_sessions',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('data', sa.Text, nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_http_sessions_expires_at', 'http_sessions', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_http_sessions_expires_at', table_name='http_sessions')
    op.drop_table('http_sessions')
    op.drop_table('setup_claims')
    op.drop_index('ix_user_invites_used_at', table_name='user_invites')
    op.drop_index('ix_user_invites_created_at', table_name='user_invites')
    op.drop_table('user_invites')
    op.drop_index('ix_user_passkeys_last_used_at', table_name='user_passkeys')
    op.drop_index('ix_user_passkeys_user_id', table_name='user_passkeys')
    op.drop_table('user_passkeys')
    op.drop_table('users')
