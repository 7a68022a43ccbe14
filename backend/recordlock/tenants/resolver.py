"""Tenant awareness: notification domains, channel access, per-tenant lock stores."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, ContextManager, Iterator, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth.utils import Actor
from ..locks.exceptions import PartitionResolutionFailure
from ..locks.store import LockStore, SqlLockStore
from ..shared.clock import Clock
from ..shared.config import Settings
from ..shared.db import session_scope, sessionmaker_for
from .models import Tenant

logger = logging.getLogger(__name__)

# tenant id (None = central database) -> store for the duration of the block
StoreFactory = Callable[[str | None], ContextManager[LockStore]]


class TenantResolver(Protocol):
    def current_domain(self) -> str: ...


class StaticTenantResolver:
    def __init__(self, domain: str):
        self.domain = domain

    def current_domain(self) -> str:
        return self.domain


class ActorTenantResolver:
    """Domain carried by the caller's token, or the fallback when it has none."""

    def __init__(self, actor: Actor, fallback: str):
        self.actor = actor
        self.fallback = fallback

    def current_domain(self) -> str:
        return self.actor.domain or self.fallback


def resolve_domain(settings: Settings, resolver: TenantResolver | None = None) -> str:
    if not settings.LOCKING_TENANCY or resolver is None:
        return settings.LOCKING_DEFAULT_DOMAIN
    return resolver.current_domain() or settings.LOCKING_DEFAULT_DOMAIN


def authorize_channel(actor: Actor | None, domain: str, tenancy: bool) -> bool:
    """May ``actor`` listen to lock events of ``domain``?"""
    if actor is None:
        return False
    if not tenancy:
        return True
    return bool(actor.domain) and actor.domain == domain


class TenantDirectory:
    def __init__(self, db: Session):
        self.db = db

    def tenant_ids(self) -> list[str]:
        return list(self.db.scalars(select(Tenant.id).order_by(Tenant.id)))

    def domain_for(self, tenant_id: str) -> str:
        try:
            tenant = self.db.get(Tenant, tenant_id)
        except SQLAlchemyError as e:
            raise PartitionResolutionFailure(tenant_id, f"tenant lookup failed: {e}") from e
        if tenant is None:
            raise PartitionResolutionFailure(tenant_id, "no such tenant")
        if not tenant.primary_domain:
            raise PartitionResolutionFailure(tenant_id, "tenant has no primary domain")
        return tenant.primary_domain


def sql_store_factory(settings: Settings, clock: Clock | None = None) -> StoreFactory:
    """Lock stores backed by the central database or a tenant's own database."""

    @contextmanager
    def _open(tenant_id: str | None) -> Iterator[LockStore]:
        if tenant_id is None:
            factory = sessionmaker_for(settings.DATABASE_URL)
        else:
            try:
                factory = sessionmaker_for(settings.tenant_database_url(tenant_id))
            except (SQLAlchemyError, KeyError, ValueError) as e:
                raise PartitionResolutionFailure(tenant_id, f"bad tenant database url: {e}") from e
        with session_scope(factory) as db:
            yield SqlLockStore(db, clock)

    return _open
