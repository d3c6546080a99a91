"""Shared SQLite engine and schema bootstrap for delegation repositories."""

from __future__ import annotations

from pathlib import Path

from sqlmodel import Session, select

from delegation_engine.storage.alembic_runner import upgrade_head
from delegation_engine.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from delegation_engine.storage.sqlmodel_models import Project


class Database:
    """Owns the SQLAlchemy engine; repositories open short sessions against it."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def session(self) -> Session:
        # Rows stay readable after commit so views can be built outside the transaction.
        return Session(self.engine, expire_on_commit=False)

    def ensure_project(self, project_id: str, name: str | None = None) -> None:
        """Create the tenant row for a project on first use."""

        with self.session() as db:
            existing = db.exec(
                select(Project).where(Project.project_id == project_id),
            ).one_or_none()
            if existing is not None:
                return
            db.add(
                Project(
                    project_id=project_id,
                    name=name or project_id,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            db.commit()
