"""create users, sessions, participants, applications

Revision ID: 3c9e51a07b42
Revises:
Create Date: 2026-10-19 10:12:31.504118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c9e51a07b42'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("profile_image", sa.String(length=500), nullable=True),
        sa.Column("active_session_id", sa.Integer(), nullable=True),  # FK added below
        sa.Column("active_session_role", sa.String(length=16), nullable=True),  # host/performer/viewer
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "(active_session_id IS NULL) = (active_session_role IS NULL)",
            name="ck_users_active_session_pair",
        ),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_active_session_id", "users", ["active_session_id"])

    op.create_table(
        "sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("host_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("max_participants", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("is_archive_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="scheduled"),
        sa.Column("scheduled_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recording_url", sa.String(length=500), nullable=True),
        sa.Column("join_token", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("max_participants BETWEEN 2 AND 10", name="ck_sessions_max_participants"),
    )
    op.create_index("ix_sessions_host_user_id", "sessions", ["host_user_id"])
    op.create_index("ix_sessions_status", "sessions", ["status"])
    op.create_index("ix_sessions_join_token", "sessions", ["join_token"], unique=True)

    op.create_foreign_key(
        "fk_users_active_session_id", "users", "sessions", ["active_session_id"], ["id"]
    )

    op.create_table(
        "session_participants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_session_participants_session_id", "session_participants", ["session_id"])
    op.create_index("ix_session_participants_user_id", "session_participants", ["user_id"])
    op.create_unique_constraint(
        "uq_session_participant", "session_participants", ["session_id", "user_id"]
    )

    op.create_table(
        "session_applications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_session_applications_session_id", "session_applications", ["session_id"])
    op.create_index("ix_session_applications_user_id", "session_applications", ["user_id"])
    op.create_unique_constraint(
        "uq_session_application", "session_applications", ["session_id", "user_id"]
    )


def downgrade():
    op.drop_constraint("uq_session_application", "session_applications", type_="unique")
    op.drop_index("ix_session_applications_user_id", table_name="session_applications")
    op.drop_index("ix_session_applications_session_id", table_name="session_applications")
    op.drop_table("session_applications")

    op.drop_constraint("uq_session_participant", "session_participants", type_="unique")
    op.drop_index("ix_session_participants_user_id", table_name="session_participants")
    op.drop_index("ix_session_participants_session_id", table_name="session_participants")
    op.drop_table("session_participants")

    op.drop_constraint("fk_users_active_session_id", "users", type_="foreignkey")
    op.drop_index("ix_sessions_join_token", table_name="sessions")
    op.drop_index("ix_sessions_status", table_name="sessions")
    op.drop_index("ix_sessions_host_user_id", table_name="sessions")
    op.drop_table("sessions")

    op.drop_index("ix_users_active_session_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
