from __future__ import annotations
from typing import Any, Callable, Protocol, runtime_checkable
from sqlalchemy import inspect
from .models import ResourceKey


@runtime_checkable
class Lockable(Protocol):
    def lock_key(self) -> ResourceKey: ...


@runtime_checkable
class ConflictNotifiable(Protocol):
    """Optional capability of a resource: show conflict messages to its user."""

    def on_lock_conflict(self, message: str) -> None: ...

    def on_version_conflict(self, message: str) -> None: ...


class CallbackHook:
    """ConflictNotifiable built from plain callables."""

    def __init__(
        self,
        on_lock: Callable[[str], Any] | None = None,
        on_version: Callable[[str], Any] | None = None,
    ):
        self._on_lock = on_lock
        self._on_version = on_version

    def on_lock_conflict(self, message: str) -> None:
        if self._on_lock:
            self._on_lock(message)

    def on_version_conflict(self, message: str) -> None:
        if self._on_version:
            self._on_version(message)


def key_for(obj: Any) -> ResourceKey:
    """Lock key of an entity: its own lock_key() or class name + primary key."""
    if isinstance(obj, Lockable):
        return obj.lock_key()
    identity = inspect(obj).identity
    if not identity:
        raise ValueError(f"{type(obj).__name__} has no primary key yet")
    return ResourceKey(type(obj).__name__, ":".join(str(v) for v in identity))


def hook_for(obj: Any) -> ConflictNotifiable | None:
    return obj if isinstance(obj, ConflictNotifiable) else None
