"""Add engine event outbox for post-commit publication."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "engine_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_engine_events_project_id", "engine_events", ["project_id"])
    op.create_index("ix_engine_events_event_type", "engine_events", ["event_type"])
    op.create_index("ix_engine_events_published_at", "engine_events", ["published_at"])
    op.create_index("idx_engine_events_project_id", "engine_events", ["project_id", "id"])
    op.create_index("idx_engine_events_entity", "engine_events", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_table("engine_events")
