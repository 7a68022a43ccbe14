"""Delivery of lock events to observers.

Publishing is best effort: the lock row is already committed when an event is
sent, so a failing transport is logged and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from typing import Any, Protocol

from .events import LockEvent
from .exceptions import NotificationFailure

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def publish(self, channel: str, event: LockEvent, exclude_self: bool) -> None: ...


class NullNotifier:
    def publish(self, channel: str, event: LockEvent, exclude_self: bool) -> None:
        return None


class RecordingNotifier:
    """Keeps every published event in memory."""

    def __init__(self):
        self.published: list[tuple[str, LockEvent, bool]] = []

    def publish(self, channel: str, event: LockEvent, exclude_self: bool) -> None:
        self.published.append((channel, event, exclude_self))

    @property
    def events(self) -> list[LockEvent]:
        return [e for _, e, _ in self.published]

    def clear(self) -> None:
        self.published.clear()


def safe_publish(notifier: Notifier, channel: str, event: LockEvent, exclude_self: bool) -> bool:
    try:
        notifier.publish(channel, event, exclude_self)
    except Exception as e:
        failure = NotificationFailure(channel, e)
        logger.warning("%s (%s %s#%s)", failure, event.name, event.resource_type, event.resource_id)
        return False
    return True


_STOP = object()


class QueuedNotifier:
    """Hands events to a worker thread so publishers never wait on the transport."""

    def __init__(self, inner: Notifier, name: str = "locking", maxsize: int = 1000):
        self.inner = inner
        self.name = name
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def start(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name=f"{self.name}-notifier", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._start_lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def publish(self, channel: str, event: LockEvent, exclude_self: bool) -> None:
        self.start()
        try:
            self._queue.put_nowait((channel, event, exclude_self))
        except queue.Full:
            logger.warning("%s queue full; dropped %s for %s", self.name, event.name, channel)

    def flush(self) -> None:
        """Block until every queued event has been handed to the transport."""
        self._queue.join()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                channel, event, exclude_self = item
                safe_publish(self.inner, channel, event, exclude_self)
            finally:
                self._queue.task_done()


class Subscription:
    """One subscriber (usually a WebSocket) listening on a channel."""

    def __init__(
        self,
        channel: str,
        session_id: str | None,
        loop: asyncio.AbstractEventLoop,
        maxsize: int = 100,
    ):
        self.channel = channel
        self.session_id = session_id
        self.loop = loop
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)

    def deliver(self, frame: dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self._put, frame)

    def _put(self, frame: dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("subscriber on %s is not keeping up; dropped a frame", self.channel)

    async def get(self) -> dict[str, Any]:
        return await self.queue.get()


class ChannelHub:
    """In-process pub/sub: fans events out to the subscribers of a channel."""

    def __init__(self):
        self._subs: dict[str, set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, channel: str, session_id: str | None = None) -> Subscription:
        sub = Subscription(channel, session_id, asyncio.get_running_loop())
        with self._lock:
            self._subs.setdefault(channel, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.channel)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subs[sub.channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subs.get(channel, ()))

    def publish(self, channel: str, event: LockEvent, exclude_self: bool) -> None:
        with self._lock:
            targets = list(self._subs.get(channel, ()))
        frame = event.envelope()
        for sub in targets:
            if exclude_self and event.origin is not None and sub.session_id == event.origin:
                continue
            try:
                sub.deliver(frame)
            except RuntimeError:
                # loop already closed; the socket is gone
                self.unsubscribe(sub)
