"""Reclaims locks left behind by crashed clients and closed tabs.

A run may overlap with live acquire/release traffic: every delete is
conditional on the lock still being expired at delete time, so a lock renewed
after it was listed survives. Runs never overlap each other; the single-flight
guard turns a second concurrent run into a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from ..shared.clock import Clock, SystemClock
from ..shared.config import Settings
from ..tenants.resolver import StoreFactory, TenantDirectory, sql_store_factory
from .events import channel_name, unlocked_event
from .exceptions import PartitionResolutionFailure, StoreUnavailable
from .notifier import Notifier, NullNotifier, safe_publish
from .scheduler import SingleFlight, ThreadSingleFlight, default_single_flight
from .store import LockStore

logger = logging.getLogger(__name__)

CENTRAL = "default"


@dataclass
class SweepReport:
    counts: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    skipped: bool = False

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def ok(self) -> bool:
        return not self.failures


class SweepCoordinator:
    def __init__(
        self,
        store_factory: StoreFactory,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        *,
        timeout_minutes: int = 5,
        tenancy: bool = False,
        default_domain: str = CENTRAL,
        directory: TenantDirectory | None = None,
        single_flight: SingleFlight | None = None,
        broadcast_self: bool = False,
    ):
        if tenancy and directory is None:
            raise ValueError("tenancy needs a tenant directory")
        self.store_factory = store_factory
        self.notifier = notifier or NullNotifier()
        self.clock = clock or SystemClock()
        self.timeout_minutes = timeout_minutes
        self.tenancy = tenancy
        self.default_domain = default_domain
        self.directory = directory
        self.single_flight = single_flight or ThreadSingleFlight()
        self.broadcast_self = broadcast_self

    def run_sweep(self, timeout_minutes: int | None = None, partitions: list[str] | None = None) -> SweepReport:
        if not self.single_flight.try_enter():
            logger.info("sweep already running elsewhere; skipped")
            return SweepReport(skipped=True)
        try:
            return self._run(timedelta(minutes=timeout_minutes or self.timeout_minutes), partitions)
        finally:
            self.single_flight.leave()

    def _run(self, timeout: timedelta, partitions: list[str] | None) -> SweepReport:
        report = SweepReport()
        if not self.tenancy:
            with self.store_factory(None) as store:
                report.counts[CENTRAL] = self._sweep(store, self.default_domain, timeout)
            logger.info("sweep removed %d lock(s) (domain %s)", report.counts[CENTRAL], self.default_domain)
            return report

        for tenant_id in partitions or self.directory.tenant_ids():
            try:
                domain = self.directory.domain_for(tenant_id)
                with self.store_factory(tenant_id) as store:
                    report.counts[tenant_id] = self._sweep(store, domain, timeout)
            except (PartitionResolutionFailure, StoreUnavailable) as e:
                logger.warning("sweep skipped tenant %s: %s", tenant_id, e)
                report.failures[tenant_id] = str(e)
                continue
            logger.info("sweep removed %d lock(s) for tenant %s (domain %s)", report.counts[tenant_id], tenant_id, domain)
        return report

    def _sweep(self, store: LockStore, domain: str, timeout: timedelta) -> int:
        channel = channel_name(domain, self.tenancy)
        count = 0
        for lock in store.list_expired(timeout, self.clock.now()):
            if not store.delete_if_expired(lock, timeout):
                continue
            count += 1
            event = unlocked_event(lock.resource_type, lock.resource_id, self.clock.now(), channel)
            safe_publish(self.notifier, channel, event, not self.broadcast_self)
        return count


def build_sweeper(
    cfg: Settings,
    notifier: Notifier,
    clock: Clock,
    directory: TenantDirectory | None = None,
    single_flight: SingleFlight | None = None,
) -> SweepCoordinator:
    return SweepCoordinator(
        sql_store_factory(cfg, clock),
        notifier,
        clock,
        timeout_minutes=cfg.LOCKING_TIMEOUT,
        tenancy=cfg.LOCKING_TENANCY,
        default_domain=cfg.LOCKING_DEFAULT_DOMAIN,
        directory=directory,
        single_flight=single_flight or default_single_flight(cfg.LOCKING_SWEEP_LOCK_FILE),
        broadcast_self=cfg.LOCKING_BROADCAST_SELF,
    )
