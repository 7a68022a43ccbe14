"""Command line entry point for the expired-lock sweep.

Meant for cron or any other external scheduler::

    recordlock-sweep --timeout 5
    recordlock-sweep --tenants acme globex
    recordlock-sweep --local

By default the running service performs the sweep (``POST /api/locks/sweep``)
so the unlock events reach its WebSocket subscribers. ``--local`` sweeps the
database from this process instead; nothing is broadcast then.
"""

from __future__ import annotations

import argparse
import logging
import sys

import httpx

from .auth.utils import Actor, create_token
from .locks.notifier import Notifier, NullNotifier
from .locks.sweep import SweepReport, build_sweeper
from .shared.clock import SystemClock
from .shared.config import Settings, settings as default_settings
from .shared.db import session_scope, sessionmaker_for
from .shared.logging import configure_logging
from .tenants.resolver import TenantDirectory

logger = logging.getLogger(__name__)

SWEEP_PATH = "/api/locks/sweep"
SWEEP_ACTOR = Actor("recordlock-sweep", name="recordlock-sweep", roles=("admin",))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recordlock-sweep",
        description="Remove expired edit locks and broadcast unlock events.",
    )
    parser.add_argument("--timeout", type=int, default=None, metavar="MINUTES", help="override LOCKING_TIMEOUT")
    parser.add_argument(
        "--tenants",
        nargs="*",
        default=None,
        metavar="ID",
        help="only these tenants (tenancy mode); default is every tenant",
    )
    parser.add_argument("--url", default=None, help="override LOCKING_SERVICE_URL")
    parser.add_argument(
        "--local",
        action="store_true",
        help="sweep from this process without asking the service (no events are broadcast)",
    )
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    return parser


def sweep_local(cfg: Settings, args: argparse.Namespace, notifier: Notifier) -> SweepReport:
    with session_scope(sessionmaker_for(cfg.DATABASE_URL)) as central:
        directory = TenantDirectory(central) if cfg.LOCKING_TENANCY else None
        return build_sweeper(cfg, notifier, SystemClock(), directory).run_sweep(args.timeout, args.tenants or None)


def sweep_remote(client: httpx.Client, cfg: Settings, args: argparse.Namespace) -> SweepReport:
    token = cfg.LOCKING_SERVICE_TOKEN or create_token(SWEEP_ACTOR)
    res = client.post(
        SWEEP_PATH,
        json={"timeout": args.timeout, "tenants": args.tenants or []},
        headers={"Authorization": f"Bearer {token}"},
    )
    res.raise_for_status()
    data = res.json()
    return SweepReport(counts=data["counts"], failures=data["failures"], skipped=data["skipped"])


def main(
    argv: list[str] | None = None,
    cfg: Settings | None = None,
    notifier: Notifier | None = None,
    client: httpx.Client | None = None,
) -> int:
    cfg = cfg or default_settings
    args = build_parser().parse_args(argv)
    if args.timeout is not None and args.timeout < 1:
        print("--timeout must be at least 1", file=sys.stderr)
        return 2
    configure_logging(args.log_level or cfg.LOG_LEVEL)

    if args.local:
        report = sweep_local(cfg, args, notifier or NullNotifier())
    else:
        owned = client is None
        if owned:
            client = httpx.Client(base_url=args.url or cfg.LOCKING_SERVICE_URL, timeout=30.0)
        try:
            report = sweep_remote(client, cfg, args)
        except httpx.HTTPStatusError as e:
            print(f"sweep request failed: {e.response.status_code} {e.response.text}", file=sys.stderr)
            return 1
        except httpx.TransportError as e:
            # service is down, so it has no subscribers to notify
            logger.warning("service at %s unreachable (%s); sweeping locally", client.base_url, e)
            report = sweep_local(cfg, args, notifier or NullNotifier())
        finally:
            if owned:
                client.close()

    logger.debug("sweep report: %s", report)
    if report.skipped:
        print("another sweep is running; nothing done")
        return 0
    for partition, count in report.counts.items():
        print(f" -> [{count}] locks removed ({partition})")
    for partition, reason in report.failures.items():
        print(f" !! {partition}: {reason}", file=sys.stderr)
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
