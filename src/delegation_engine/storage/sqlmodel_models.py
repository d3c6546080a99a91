"""SQLModel ORM tables for delegation storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True, index=True)
    name: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ContainerPool(SQLModel, table=True):
    __tablename__ = "container_pools"  # type: ignore[bad-override]

    pool_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
            index=True,
        ),
    )
    status: str = Field(index=True)
    warm_pool_size: int = Field(default=1)
    max_pool_size: int = Field(default=3)
    context_threshold_percent: int = Field(default=80)
    auto_delegate_enabled: bool = Field(default=True)
    skip_user_required: bool = Field(default=True)
    config_json: str | None = Field(default=None, sa_column=Column(Text))
    last_activity_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ContainerSession(SQLModel, table=True):
    __tablename__ = "container_sessions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_container_sessions_pool_status", "pool_id", "status"),
        Index(
            "uq_container_sessions_handoff_from",
            "handoff_from_id",
            unique=True,
            sqlite_where=text("handoff_from_id IS NOT NULL"),
        ),
    )

    session_id: str = Field(primary_key=True)
    pool_id: str = Field(
        sa_column=Column(
            ForeignKey("container_pools.pool_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    container_id: str | None = None
    status: str = Field(index=True)
    context_used_tokens: int = Field(default=0)
    context_max_tokens: int = Field(default=100_000)
    context_percent: float = Field(default=0.0, index=True)
    last_context_check_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    current_task_id: str | None = Field(default=None, index=True)
    tasks_completed: int = Field(default=0)
    handoff_from_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("container_sessions.session_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    handoff_summary: str | None = Field(default=None, sa_column=Column(Text))
    error_reason: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    last_activity_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItem(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_work_items_project_status", "project_id", "status"),
        Index("idx_work_items_project_version", "project_id", "version"),
    )

    item_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    dependency_class: str = Field(index=True)
    priority: str = Field(index=True)
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("work_items.item_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    blocked_by_json: str | None = Field(default=None, sa_column=Column(Text))
    tags_json: str | None = Field(default=None, sa_column=Column(Text))
    client_id: str | None = Field(default=None, index=True)
    version: int = Field(default=0)
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemAuditEntry(SQLModel, table=True):
    __tablename__ = "work_item_audit_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_item_audit_entries_item_time", "item_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    item_id: str = Field(
        sa_column=Column(
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    agent_id: str | None = None
    note: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DelegationRequest(SQLModel, table=True):
    __tablename__ = "delegation_requests"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_delegation_requests_item_status", "item_id", "status"),
        Index("idx_delegation_requests_project_status", "project_id", "status"),
        Index(
            "uq_delegation_requests_item_claimed",
            "item_id",
            unique=True,
            sqlite_where=text("status = 'claimed'"),
        ),
    )

    request_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    item_id: str = Field(
        sa_column=Column(
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    session_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("container_sessions.session_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    status: str = Field(index=True)
    requested_by_session: str | None = None
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancelled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_reason: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EngineEvent(SQLModel, table=True):
    __tablename__ = "engine_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_engine_events_project_id", "project_id", "id"),
        Index("idx_engine_events_entity", "entity_type", "entity_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    entity_type: str
    entity_id: str
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    published_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), index=True),
    )
