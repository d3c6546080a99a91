"""Initial project, pool, session, work item and delegation schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("project_id"),
    )
    op.create_index("ix_projects_project_id", "projects", ["project_id"])

    op.create_table(
        "container_pools",
        sa.Column("pool_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("warm_pool_size", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_pool_size", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "context_threshold_percent",
            sa.Integer(),
            nullable=False,
            server_default="80",
        ),
        sa.Column(
            "auto_delegate_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column(
            "skip_user_required",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column("config_json", sa.Text(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("pool_id"),
    )
    op.create_index(
        "ix_container_pools_project_id",
        "container_pools",
        ["project_id"],
        unique=True,
    )
    op.create_index("ix_container_pools_status", "container_pools", ["status"])

    op.create_table(
        "work_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("dependency_class", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("blocked_by_json", sa.Text(), nullable=True),
        sa.Column("tags_json", sa.Text(), nullable=True),
        sa.Column("client_id", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_id"], ["work_items.item_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_work_items_project_id", "work_items", ["project_id"])
    op.create_index("ix_work_items_status", "work_items", ["status"])
    op.create_index("ix_work_items_dependency_class", "work_items", ["dependency_class"])
    op.create_index("ix_work_items_priority", "work_items", ["priority"])
    op.create_index("ix_work_items_parent_id", "work_items", ["parent_id"])
    op.create_index("ix_work_items_client_id", "work_items", ["client_id"])
    op.create_index("idx_work_items_project_status", "work_items", ["project_id", "status"])
    op.create_index("idx_work_items_project_version", "work_items", ["project_id", "version"])

    op.create_table(
        "work_item_audit_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.item_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_work_item_audit_entries_item_id",
        "work_item_audit_entries",
        ["item_id"],
    )
    op.create_index(
        "idx_work_item_audit_entries_item_time",
        "work_item_audit_entries",
        ["item_id", "created_at"],
    )

    op.create_table(
        "container_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("pool_id", sa.String(), nullable=False),
        sa.Column("container_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("context_used_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "context_max_tokens",
            sa.Integer(),
            nullable=False,
            server_default="100000",
        ),
        sa.Column("context_percent", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_context_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_task_id", sa.String(), nullable=True),
        sa.Column("tasks_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("handoff_from_id", sa.String(), nullable=True),
        sa.Column("handoff_summary", sa.Text(), nullable=True),
        sa.Column("error_reason", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pool_id"], ["container_pools.pool_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["handoff_from_id"],
            ["container_sessions.session_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index("ix_container_sessions_pool_id", "container_sessions", ["pool_id"])
    op.create_index("ix_container_sessions_status", "container_sessions", ["status"])
    op.create_index(
        "ix_container_sessions_context_percent",
        "container_sessions",
        ["context_percent"],
    )
    op.create_index(
        "ix_container_sessions_current_task_id",
        "container_sessions",
        ["current_task_id"],
    )
    op.create_index(
        "idx_container_sessions_pool_status",
        "container_sessions",
        ["pool_id", "status"],
    )
    op.create_index(
        "uq_container_sessions_handoff_from",
        "container_sessions",
        ["handoff_from_id"],
        unique=True,
        sqlite_where=sa.text("handoff_from_id IS NOT NULL"),
    )

    op.create_table(
        "delegation_requests",
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("requested_by_session", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.item_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["container_sessions.session_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("request_id"),
    )
    op.create_index("ix_delegation_requests_project_id", "delegation_requests", ["project_id"])
    op.create_index("ix_delegation_requests_item_id", "delegation_requests", ["item_id"])
    op.create_index("ix_delegation_requests_session_id", "delegation_requests", ["session_id"])
    op.create_index("ix_delegation_requests_status", "delegation_requests", ["status"])
    op.create_index(
        "idx_delegation_requests_item_status",
        "delegation_requests",
        ["item_id", "status"],
    )
    op.create_index(
        "idx_delegation_requests_project_status",
        "delegation_requests",
        ["project_id", "status"],
    )
    op.create_index(
        "uq_delegation_requests_item_claimed",
        "delegation_requests",
        ["item_id"],
        unique=True,
        sqlite_where=sa.text("status = 'claimed'"),
    )


def downgrade() -> None:
    op.drop_table("delegation_requests")
    op.drop_table("container_sessions")
    op.drop_table("work_item_audit_entries")
    op.drop_table("work_items")
    op.drop_table("container_pools")
    op.drop_table("projects")
