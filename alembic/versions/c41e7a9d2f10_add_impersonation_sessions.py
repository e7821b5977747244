"""add accounts, impersonation_sessions and audit_logs

Revision ID: c41e7a9d2f10
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "c41e7a9d2f10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = sa.Enum("superadmin", "admin", "csm", "user", name="user_role")
user_status = sa.Enum("active", "inactive", "suspended", name="user_status")
impersonation_status = sa.Enum("active", "ended", "expired", name="impersonation_status")
impersonation_end_reason = sa.Enum(
    "manual_stop",
    "superseded_by_new_session",
    "expired",
    "admin_revoked",
    name="impersonation_end_reason",
)

ACTIVE_ONLY = sa.text("status = 'active'")


def upgrade() -> None:
    """Create identity, account-scope, impersonation session and audit tables."""
    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=False),
        sa.Column("full_name", sa.String(length=256), nullable=False),
        sa.Column("role", user_role, nullable=False),
        sa.Column("status", user_status, nullable=False),
        sa.Column("current_impersonator_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ["current_impersonator_id"],
            ["users.id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "user_accounts",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "account_id"),
    )
    op.create_table(
        "csm_assignments",
        sa.Column("csm_id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.ForeignKeyConstraint(["csm_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("csm_id", "account_id"),
    )

    op.create_table(
        "impersonation_sessions",
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=False),
        sa.Column("target_id", sa.Uuid(), nullable=False),
        sa.Column("actor_role_snapshot", sa.String(length=32), nullable=False),
        sa.Column("target_role_snapshot", sa.String(length=32), nullable=False),
        sa.Column("reason", sa.String(length=1024), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", impersonation_status, nullable=False),
        sa.Column("end_reason", impersonation_end_reason, nullable=True),
        sa.Column("ended_by", sa.Uuid(), nullable=True),
        sa.Column("credential_id", sa.String(length=64), nullable=True),
        sa.Column("credential_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actions_performed", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.CheckConstraint("actor_id <> target_id", name="ck_impersonation_not_self"),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["target_id"], ["users.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("session_id"),
    )
    # At most one ACTIVE session per actor and per target.
    op.create_index(
        "uq_impersonation_active_actor",
        "impersonation_sessions",
        ["actor_id"],
        unique=True,
        postgresql_where=ACTIVE_ONLY,
    )
    op.create_index(
        "uq_impersonation_active_target",
        "impersonation_sessions",
        ["target_id"],
        unique=True,
        postgresql_where=ACTIVE_ONLY,
    )
    op.create_index(
        "ix_impersonation_actor_status",
        "impersonation_sessions",
        ["actor_id", "status"],
    )
    op.create_index(
        "ix_impersonation_target_status",
        "impersonation_sessions",
        ["target_id", "status"],
    )
    op.create_index("ix_impersonation_started_at", "impersonation_sessions", ["started_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("target_id", sa.Uuid(), nullable=True),
        sa.Column("as_impersonated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_event", "audit_logs", ["event"])
    op.create_index("ix_audit_logs_session_id", "audit_logs", ["session_id"])
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])


def downgrade() -> None:
    """Drop impersonation, audit and identity tables."""
    op.drop_index("ix_audit_logs_actor_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_session_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_event", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_impersonation_started_at", table_name="impersonation_sessions")
    op.drop_index("ix_impersonation_target_status", table_name="impersonation_sessions")
    op.drop_index("ix_impersonation_actor_status", table_name="impersonation_sessions")
    op.drop_index("uq_impersonation_active_target", table_name="impersonation_sessions")
    op.drop_index("uq_impersonation_active_actor", table_name="impersonation_sessions")
    op.drop_table("impersonation_sessions")

    op.drop_table("csm_assignments")
    op.drop_table("user_accounts")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_table("accounts")

    impersonation_end_reason.drop(op.get_bind(), checkfirst=True)
    impersonation_status.drop(op.get_bind(), checkfirst=True)
    user_status.drop(op.get_bind(), checkfirst=True)
    user_role.drop(op.get_bind(), checkfirst=True)
