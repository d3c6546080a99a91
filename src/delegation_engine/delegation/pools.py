"""Container pool repository: capacity policy and admission control."""

from __future__ import annotations

import logging
from uuid import uuid4

from sqlmodel import Session, col, select

from delegation_engine.delegation.errors import InvalidTransitionError, PolicyViolationError
from delegation_engine.delegation.events import EventOutbox
from delegation_engine.delegation.models import (
    HANDOFF_BUFFER_PERCENT,
    LIVE_SESSION_STATUSES,
    EntityType,
    PoolConfig,
    PoolStatus,
    PoolView,
    SessionStatus,
    SessionView,
)
from delegation_engine.delegation.sessions import (
    count_sessions_in,
    find_pool_for_project_in,
    load_pool_for_project_in,
    retire_in,
    to_session_view,
    touch_pool_in,
)
from delegation_engine.storage.common import (
    dump_json,
    load_json_dict,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from delegation_engine.storage.database import Database
from delegation_engine.storage.sqlmodel_models import ContainerPool, ContainerSession

logger = logging.getLogger(__name__)

POOL_TRANSITIONS: dict[PoolStatus, frozenset[PoolStatus]] = {
    PoolStatus.ACTIVE: frozenset({PoolStatus.PAUSED, PoolStatus.DRAINING}),
    PoolStatus.PAUSED: frozenset({PoolStatus.ACTIVE, PoolStatus.DRAINING}),
    PoolStatus.DRAINING: frozenset({PoolStatus.ACTIVE}),
}


class PoolRepository:
    """Persistence facade for per-project container pools."""

    def __init__(
        self,
        database: Database,
        outbox: EventOutbox,
        *,
        defaults: PoolConfig | None = None,
    ) -> None:
        self.database = database
        self.outbox = outbox
        self.defaults = defaults if defaults is not None else PoolConfig()
        self.defaults.validate()

    def ensure_pool(self, project_id: str) -> PoolView:
        """Return the project's pool, creating it with defaults on first use."""

        self.database.ensure_project(project_id)
        with self.database.session() as db:
            pool = find_pool_for_project_in(db, project_id)
            if pool is None:
                pool = self._create_in(db, project_id, self.defaults)
                self.outbox.commit(db)
            return to_pool_view(db, pool)

    def configure_pool(self, project_id: str, config: PoolConfig) -> PoolView:
        """Create or update the pool policy; out-of-range values are rejected."""

        config.validate()
        self.database.ensure_project(project_id)
        with self.database.session() as db:
            pool = find_pool_for_project_in(db, project_id)
            if pool is None:
                pool = self._create_in(db, project_id, config)
            else:
                live = count_sessions_in(db, pool.pool_id, LIVE_SESSION_STATUSES)
                if config.max_pool_size < live:
                    raise PolicyViolationError(
                        f"max_pool_size {config.max_pool_size} is below the {live} live "
                        f"sessions of pool {pool.pool_id}; retire sessions first.",
                    )
                pool.warm_pool_size = config.warm_pool_size
                pool.max_pool_size = config.max_pool_size
                pool.context_threshold_percent = config.context_threshold_percent
                pool.auto_delegate_enabled = config.auto_delegate_enabled
                pool.skip_user_required = config.skip_user_required
                pool.config_json = dump_json(config.config)
                pool.updated_at = to_db_datetime(utc_now())
                db.add(pool)
                self.outbox.record(
                    db,
                    project_id=project_id,
                    entity_type=EntityType.POOL,
                    entity_id=pool.pool_id,
                    event_type="pool.updated",
                    status_from=pool.status,
                    status_to=pool.status,
                    details=_config_details(config),
                )
            self.outbox.commit(db)
            return to_pool_view(db, pool)

    def find_pool(self, project_id: str) -> PoolView | None:
        with self.database.session() as db:
            pool = find_pool_for_project_in(db, project_id)
            return to_pool_view(db, pool) if pool is not None else None

    def get_pool(self, project_id: str) -> PoolView:
        with self.database.session() as db:
            return to_pool_view(db, load_pool_for_project_in(db, project_id))

    def can_spawn_new_session(self, project_id: str) -> bool:
        pool = self.find_pool(project_id)
        return pool is not None and pool.can_spawn_new_session

    def needs_warmup(self, project_id: str) -> bool:
        pool = self.find_pool(project_id)
        return pool is not None and pool.needs_warmup

    def find_available_session(
        self,
        project_id: str,
        *,
        buffer_percent: int = HANDOFF_BUFFER_PERCENT,
    ) -> SessionView | None:
        """Least-loaded idle session with room below the threshold minus ``buffer_percent``."""

        with self.database.session() as db:
            pool = find_pool_for_project_in(db, project_id)
            if pool is None:
                return None
            ceiling = pool.context_threshold_percent - buffer_percent
            row = db.exec(
                select(ContainerSession)
                .where(
                    ContainerSession.pool_id == pool.pool_id,
                    ContainerSession.status == SessionStatus.IDLE.value,
                    col(ContainerSession.current_task_id).is_(None),
                    col(ContainerSession.context_percent) < ceiling,
                )
                .order_by(
                    col(ContainerSession.context_percent).asc(),
                    col(ContainerSession.created_at).asc(),
                )
                .limit(1),
            ).one_or_none()
            return to_session_view(db, row, pool) if row is not None else None

    def pause(self, project_id: str) -> PoolView:
        return self._set_status(project_id, PoolStatus.PAUSED)

    def resume(self, project_id: str) -> PoolView:
        return self._set_status(project_id, PoolStatus.ACTIVE)

    def drain(self, project_id: str) -> PoolView:
        return self._set_status(project_id, PoolStatus.DRAINING)

    def touch_activity(self, project_id: str) -> PoolView:
        with self.database.session() as db:
            pool = load_pool_for_project_in(db, project_id)
            touch_pool_in(db, pool)
            db.commit()
            return to_pool_view(db, pool)

    def teardown_pool(self, project_id: str, summary: str | None = None) -> PoolView:
        """Stop admissions and retire every session; claims they held go back to the board."""

        with self.database.session() as db:
            pool = load_pool_for_project_in(db, project_id)
            if pool.status != PoolStatus.DRAINING.value:
                _transition_pool_in(db, self.outbox, pool, PoolStatus.DRAINING)
            rows = db.exec(
                select(ContainerSession).where(
                    ContainerSession.pool_id == pool.pool_id,
                    ContainerSession.status != SessionStatus.RETIRED.value,
                ),
            ).all()
            for row in rows:
                retire_in(
                    db,
                    self.outbox,
                    row,
                    pool,
                    summary=summary or "Pool teardown",
                )
            self.outbox.commit(db)
            logger.info("Pool %s torn down: retired %s sessions", pool.pool_id, len(rows))
            return to_pool_view(db, pool)

    def _set_status(self, project_id: str, target: PoolStatus) -> PoolView:
        with self.database.session() as db:
            pool = load_pool_for_project_in(db, project_id)
            if pool.status != target.value:
                _transition_pool_in(db, self.outbox, pool, target)
                self.outbox.commit(db)
            return to_pool_view(db, pool)

    def _create_in(self, db: Session, project_id: str, config: PoolConfig) -> ContainerPool:
        now = to_db_datetime(utc_now())
        pool = ContainerPool(
            pool_id=str(uuid4()),
            project_id=project_id,
            status=PoolStatus.ACTIVE.value,
            warm_pool_size=config.warm_pool_size,
            max_pool_size=config.max_pool_size,
            context_threshold_percent=config.context_threshold_percent,
            auto_delegate_enabled=config.auto_delegate_enabled,
            skip_user_required=config.skip_user_required,
            config_json=dump_json(config.config),
            created_at=now,
            updated_at=now,
        )
        db.add(pool)
        self.outbox.record(
            db,
            project_id=project_id,
            entity_type=EntityType.POOL,
            entity_id=pool.pool_id,
            event_type="pool.created",
            status_from=None,
            status_to=PoolStatus.ACTIVE.value,
            details=_config_details(config),
        )
        logger.info("Created container pool %s for project %s", pool.pool_id, project_id)
        return pool


def _transition_pool_in(
    db: Session,
    outbox: EventOutbox,
    pool: ContainerPool,
    target: PoolStatus,
) -> None:
    previous = PoolStatus(pool.status)
    if target not in POOL_TRANSITIONS[previous]:
        raise InvalidTransitionError(
            f"Pool {pool.pool_id} cannot move from {previous.value} to {target.value}.",
        )
    pool.status = target.value
    pool.updated_at = to_db_datetime(utc_now())
    db.add(pool)
    outbox.record(
        db,
        project_id=pool.project_id,
        entity_type=EntityType.POOL,
        entity_id=pool.pool_id,
        event_type="pool.status_changed",
        status_from=previous.value,
        status_to=target.value,
    )


def _config_details(config: PoolConfig) -> dict[str, object]:
    return {
        "warm_pool_size": config.warm_pool_size,
        "max_pool_size": config.max_pool_size,
        "context_threshold_percent": config.context_threshold_percent,
        "auto_delegate_enabled": config.auto_delegate_enabled,
        "skip_user_required": config.skip_user_required,
    }


def to_pool_view(db: Session, pool: ContainerPool) -> PoolView:
    return PoolView(
        pool_id=pool.pool_id,
        project_id=pool.project_id,
        status=PoolStatus(pool.status),
        warm_pool_size=pool.warm_pool_size,
        max_pool_size=pool.max_pool_size,
        context_threshold_percent=pool.context_threshold_percent,
        auto_delegate_enabled=pool.auto_delegate_enabled,
        skip_user_required=pool.skip_user_required,
        config=load_json_dict(pool.config_json),
        active_sessions=count_sessions_in(db, pool.pool_id, LIVE_SESSION_STATUSES),
        idle_sessions=count_sessions_in(db, pool.pool_id, frozenset({SessionStatus.IDLE})),
        last_activity_at=optional_utc(pool.last_activity_at),
        created_at=to_utc_aware_datetime(pool.created_at),
        updated_at=to_utc_aware_datetime(pool.updated_at),
    )
