# backend/recordlock/locks/router.py
import asyncio
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from ..auth.utils import Actor, current_actor, decode_token, require_roles
from ..deps import current_domain, get_lock_manager, get_settings
from ..shared.clock import effective_timeout
from ..tenants.resolver import ActorTenantResolver, authorize_channel, resolve_domain
from .events import channel_name
from .exceptions import LOCKED_MESSAGE
from .manager import LockManager
from .models import LockRecord
from .notifier import Subscription
from .resources import CallbackHook
from .schemas import LockAcquireIn, LockOut, LockOwnerOut, LockReleaseIn, ReleaseOut, SweepIn, SweepOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/locks", tags=["locks"])

# WebSocket close code for policy violations
WS_POLICY_VIOLATION = 1008


def _to_out(manager: LockManager, lock: LockRecord, actor: Actor) -> LockOut:
    return LockOut(
        id=lock.id,
        resource_type=lock.resource_type,
        resource_id=lock.resource_id,
        owner_id=lock.owner_id,
        acquired_at=lock.acquired_at,
        expires_at=lock.acquired_at + effective_timeout(manager.timeout),
        remaining_sec=manager.remaining_seconds(lock),
        mine=lock.owner_id == actor.id,
    )


@router.get("", response_model=Optional[LockOut])
def get_lock(
    resource_type: str,
    resource_id: str,
    actor: Actor = Depends(current_actor),
    domain: str = Depends(current_domain),
    manager: LockManager = Depends(get_lock_manager),
):
    # drops the lock first if it has expired
    manager.is_locked(resource_type, resource_id, actor.id, domain)
    lock = manager.status(resource_type, resource_id)
    if not lock:
        return None
    return _to_out(manager, lock, actor)


@router.post("/acquire", response_model=LockOut)
def acquire_lock(
    req: LockAcquireIn,
    request: Request,
    actor: Actor = Depends(current_actor),
    domain: str = Depends(current_domain),
    manager: LockManager = Depends(get_lock_manager),
):
    messages: list[str] = []
    ok = manager.acquire(
        req.resource_type,
        req.resource_id,
        actor.id,
        domain,
        owner_name=actor.display_name,
        origin=request.headers.get("x-socket-id"),
        hook=CallbackHook(on_lock=messages.append),
    )
    if not ok:
        raise HTTPException(status_code=423, detail=messages[0] if messages else LOCKED_MESSAGE)
    lock = manager.status(req.resource_type, req.resource_id)
    if lock is None:
        # only possible with a timeout shorter than the request itself
        raise HTTPException(status_code=409, detail="lock expired")
    return _to_out(manager, lock, actor)


@router.post("/release", response_model=ReleaseOut)
def release(
    req: LockReleaseIn,
    request: Request,
    actor: Actor = Depends(current_actor),
    domain: str = Depends(current_domain),
    manager: LockManager = Depends(get_lock_manager),
):
    released = manager.release(
        req.resource_type, req.resource_id, actor.id, domain, origin=request.headers.get("x-socket-id")
    )
    return {"released": released}


@router.get("/owner", response_model=LockOwnerOut)
def lock_owner(resource_type: str, resource_id: str, manager: LockManager = Depends(get_lock_manager)):
    return LockOwnerOut(
        resource_type=resource_type,
        resource_id=resource_id,
        owner_id=manager.lock_owner(resource_type, resource_id),
    )


@router.post("/sweep", response_model=SweepOut)
def run_sweep(req: SweepIn, request: Request, _=Depends(require_roles("admin"))):
    report = request.app.state.sweeper.run_sweep(req.timeout, req.tenants or None)
    return SweepOut(counts=report.counts, failures=report.failures, skipped=report.skipped, total=report.total)


async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    try:
        while True:
            await websocket.send_json(await sub.get())
    except WebSocketDisconnect:
        return


async def _drain(websocket: WebSocket) -> None:
    while True:
        msg = await websocket.receive()
        if msg["type"] == "websocket.disconnect":
            return


async def until_first_done(*coros) -> None:
    """Run ``coros`` until one finishes; cancel the rest."""
    tasks = {asyncio.create_task(c) for c in coros}
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if task.cancelled():
            continue
        exc = task.exception()
        if exc is not None:
            logger.info("lock subscription closed: %r", exc)


@router.websocket("/ws")
async def subscribe(
    websocket: WebSocket,
    token: str = Query(...),
    domain: Optional[str] = Query(None),
    session: Optional[str] = Query(None),
):
    cfg = get_settings(websocket)
    try:
        actor = decode_token(token)
    except HTTPException:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    domain = domain or resolve_domain(cfg, ActorTenantResolver(actor, cfg.LOCKING_DEFAULT_DOMAIN))
    if not authorize_channel(actor, domain, cfg.LOCKING_TENANCY):
        logger.info("actor %s denied lock channel for %s", actor.id, domain)
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    await websocket.accept()
    hub = websocket.app.state.hub
    sub = hub.subscribe(channel_name(domain, cfg.LOCKING_TENANCY), session)
    try:
        await websocket.send_json({"event": "subscribed", "channel": sub.channel})
        await until_first_done(_pump(websocket, sub), _drain(websocket))
    finally:
        hub.unsubscribe(sub)
