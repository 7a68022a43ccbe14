# backend/recordlock/deps.py
# Request-scoped wiring. Long-lived pieces (notifier, clock, sessions) live on app.state.
from typing import Callable, Iterator
from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker
from .auth.utils import Actor, current_actor
from .locks.manager import LockManager
from .locks.store import SqlLockStore
from .shared.config import Settings, settings as default_settings
from .shared.db import sessionmaker_for
from .tenants.resolver import ActorTenantResolver, resolve_domain

SessionSource = Callable[[str | None], sessionmaker]


def default_session_source(cfg: Settings) -> SessionSource:
    def _source(tenant_id: str | None) -> sessionmaker:
        if tenant_id is None:
            return sessionmaker_for(cfg.DATABASE_URL)
        return sessionmaker_for(cfg.tenant_database_url(tenant_id))

    return _source


def get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", default_settings)


def current_domain(request: Request, actor: Actor = Depends(current_actor)) -> str:
    cfg = get_settings(request)
    return resolve_domain(cfg, ActorTenantResolver(actor, cfg.LOCKING_DEFAULT_DOMAIN))


def get_lock_db(request: Request, actor: Actor = Depends(current_actor)) -> Iterator[Session]:
    cfg = get_settings(request)
    source: SessionSource = request.app.state.sessions
    tenant_id = actor.tenant_id if cfg.LOCKING_TENANCY else None
    db = source(tenant_id)()
    try:
        yield db
    finally:
        db.close()


def get_lock_manager(request: Request, db: Session = Depends(get_lock_db)) -> LockManager:
    cfg = get_settings(request)
    state = request.app.state
    return LockManager(
        SqlLockStore(db, state.clock),
        state.notifier,
        state.clock,
        timeout_minutes=cfg.LOCKING_TIMEOUT,
        tenancy=cfg.LOCKING_TENANCY,
        broadcast_self=cfg.LOCKING_BROADCAST_SELF,
    )
