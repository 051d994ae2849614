"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create credential, consent and notification preference tables."""

    # ========================================================================
    # Create user_credentials table
    # ========================================================================
    op.create_table(
        'user_credentials',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('access_key_id', sa.String(128), nullable=False),
        sa.Column('secret_access_key', sa.String(255), nullable=False),
        sa.Column('session_token', sa.Text(), nullable=True),
        sa.Column('region', sa.String(32), nullable=True),
        *_audit_columns(),
    )

    # ========================================================================
    # Create consent_grants table
    # ========================================================================
    op.create_table(
        'consent_grants',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('category_id', sa.String(64), primary_key=True),
        sa.Column('granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('granted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
    )
    op.create_index('idx_consent_grants_user', 'consent_grants', ['user_id'])

    # ========================================================================
    # Create notification_preferences table
    # ========================================================================
    op.create_table(
        'notification_preferences',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('notification_type', sa.String(64), primary_key=True),
        sa.Column('channel', sa.Text(), nullable=True),
        sa.Column('enabled', sa.String(5), nullable=False, server_default='TRUE'),
        *_audit_columns(),
        sa.CheckConstraint(
            "enabled IN ('TRUE', 'FALSE')",
            name='ck_notification_preferences_enabled',
        ),
    )
    op.create_index('idx_notification_preferences_user', 'notification_preferences', ['user_id'])

    # ========================================================================
    # Create legacy_preferences table
    # ========================================================================
    op.create_table(
        'legacy_preferences',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('channel', sa.Text(), nullable=True),
        sa.Column('realtime_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('daily_digest_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('weekly_digest_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_audit_columns(),
    )


def downgrade() -> None:
    """Drop all broker tables."""
    op.drop_table('legacy_preferences')
    op.drop_index('idx_notification_preferences_user', table_name='notification_preferences')
    op.drop_table('notification_preferences')
    op.drop_index('idx_consent_grants_user', table_name='consent_grants')
    op.drop_table('consent_grants')
    op.drop_table('user_credentials')
