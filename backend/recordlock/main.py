from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .deps import SessionSource, default_session_source
from .locks.exceptions import LockConflict, StoreUnavailable, VersionConflict
from .locks.notifier import ChannelHub, QueuedNotifier
from .locks.router import router as locks_router
from .locks.scheduler import SweepTicker, default_single_flight
from .locks.sweep import SweepCoordinator, build_sweeper
from .shared.clock import Clock, SystemClock
from .shared.config import Settings, settings as default_settings
from .shared.db import session_scope, sessionmaker_for
from .shared.logging import configure_logging
from .tenants.resolver import TenantDirectory


def create_app(
    cfg: Settings | None = None,
    *,
    clock: Clock | None = None,
    sessions: SessionSource | None = None,
    sweeper: SweepCoordinator | None = None,
    start_sweeper: bool | None = None,
) -> FastAPI:
    cfg = cfg or default_settings
    configure_logging(cfg.LOG_LEVEL)
    clock = clock or SystemClock()
    hub = ChannelHub()
    notifier = QueuedNotifier(hub, name=cfg.LOCKING_QUEUE)
    run_ticker = cfg.LOCKING_SWEEP_ENABLED if start_sweeper is None else start_sweeper

    sweeper = sweeper or _LazySweeper(cfg, notifier, clock)
    ticker = SweepTicker(sweeper.run_sweep, cfg.LOCKING_INTERVAL, name=f"{cfg.LOCKING_QUEUE}-sweep")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        notifier.start()
        if run_ticker:
            ticker.start()
        try:
            yield
        finally:
            ticker.stop()
            notifier.stop()

    app = FastAPI(
        title="recordlock API",
        version="0.1.0",
        openapi_url=f"{cfg.API_PREFIX}/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.clock = clock
    app.state.hub = hub
    app.state.notifier = notifier
    app.state.sessions = sessions or default_session_source(cfg)
    app.state.ticker = ticker
    app.state.sweeper = sweeper

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"detail": exc.message})

    @app.exception_handler(LockConflict)
    async def _lock_conflict(request: Request, exc: LockConflict):
        return JSONResponse(status_code=423, content={"detail": exc.message})

    @app.exception_handler(VersionConflict)
    async def _version_conflict(request: Request, exc: VersionConflict):
        return JSONResponse(status_code=409, content={"detail": exc.message})

    @app.get(f"{cfg.API_PREFIX}/healthz")
    def healthz():
        return {"status": "ok", "app": "recordlock", "tenancy": cfg.LOCKING_TENANCY}

    app.include_router(locks_router)
    return app


class _LazySweeper:
    """Builds a SweepCoordinator per run so the tenant directory gets a fresh session."""

    def __init__(self, cfg: Settings, notifier, clock: Clock):
        self.cfg = cfg
        self.notifier = notifier
        self.clock = clock
        self.single_flight = default_single_flight(cfg.LOCKING_SWEEP_LOCK_FILE)

    def run_sweep(self, timeout_minutes: int | None = None, partitions: list[str] | None = None):
        with session_scope(sessionmaker_for(self.cfg.DATABASE_URL)) as central:
            directory = TenantDirectory(central) if self.cfg.LOCKING_TENANCY else None
            return build_sweeper(self.cfg, self.notifier, self.clock, directory, self.single_flight).run_sweep(
                timeout_minutes, partitions
            )


app = create_app()
