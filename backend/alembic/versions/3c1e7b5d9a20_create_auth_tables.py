"""create auth tables

Revision ID: 3c1e7b5d9a20
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3c1e7b5d9a20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("spotify_id", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("profile_image", sa.Text(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.String(length=512), nullable=True),
        sa.Column("token_expires_at", sa.String(length=26), nullable=True),
        sa.Column("created_at", sa.String(length=26), nullable=True),
        sa.Column("updated_at", sa.String(length=26), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_users_spotify_id"), ["spotify_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_users_refresh_token"), ["refresh_token"], unique=False)

    op.create_table(
        "session_audit",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("login_at", sa.String(length=26), nullable=False),
        sa.Column("logout_at", sa.String(length=26), nullable=True),
        sa.Column("session_duration", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("session_audit", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_session_audit_user_id"), ["user_id"], unique=False)
        batch_op.create_index("ix_session_audit_user_open", ["user_id", "logout_at"], unique=False)
        batch_op.create_index(batch_op.f("ix_session_audit_session_id"), ["session_id"], unique=False)

    op.create_table(
        "auth_attempts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("session_audit_id", sa.String(length=36), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempted_at", sa.String(length=26), nullable=False),
        sa.ForeignKeyConstraint(["session_audit_id"], ["session_audit.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("auth_attempts", schema=None) as batch_op:
        batch_op.create_index("ix_auth_attempts_attempted_at", ["attempted_at"], unique=False)

    op.create_table(
        "user_sessions",
        sa.Column("sid", sa.String(length=128), nullable=False),
        sa.Column("data", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.String(length=26), nullable=False),
        sa.PrimaryKeyConstraint("sid"),
    )
    with op.batch_alter_table("user_sessions", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_user_sessions_expires_at"), ["expires_at"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    with op.batch_alter_table("user_sessions", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_user_sessions_expires_at"))
    op.drop_table("user_sessions")

    with op.batch_alter_table("auth_attempts", schema=None) as batch_op:
        batch_op.drop_index("ix_auth_attempts_attempted_at")
    op.drop_table("auth_attempts")

    with op.batch_alter_table("session_audit", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_session_audit_session_id"))
        batch_op.drop_index("ix_session_audit_user_open")
        batch_op.drop_index(batch_op.f("ix_session_audit_user_id"))
    op.drop_table("session_audit")

    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_users_refresh_token"))
        batch_op.drop_index(batch_op.f("ix_users_spotify_id"))
    op.drop_table("users")
