from __future__ import annotations
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class LockEventKind(str, enum.Enum):
    locked = "locked"
    unlocked = "unlocked"


EVENT_NAMES = {
    LockEventKind.locked: "ModelLocked",
    LockEventKind.unlocked: "ModelUnlocked",
}


def channel_name(domain: str, tenancy: bool) -> str:
    """Broadcast channel for a domain: ``tenant.<domain>.locks`` or ``locks.<domain>``."""
    if tenancy:
        return f"tenant.{domain}.locks"
    return f"locks.{domain}"


@dataclass(frozen=True)
class LockEvent:
    kind: LockEventKind
    resource_type: str
    resource_id: str
    occurred_at: datetime
    channel: str
    owner_id: str | None = None
    owner_name: str | None = None
    # session that caused the event; skipped when publishing with exclude_self
    origin: str | None = field(default=None, compare=False)

    @property
    def name(self) -> str:
        return EVENT_NAMES[self.kind]

    @property
    def message(self) -> str:
        if self.kind is LockEventKind.locked:
            who = self.owner_name or self.owner_id
            return f"Record #{self.resource_id} is being edited by {who}."
        return f"Record #{self.resource_id} has been released."

    def payload(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.kind.value,
            "model_type": self.resource_type,
            "model_id": self.resource_id,
            "message": self.message,
        }
        if self.kind is LockEventKind.locked:
            data["user"] = {"id": self.owner_id, "name": self.owner_name or self.owner_id}
            data["locked_at"] = self.occurred_at.isoformat()
        return data

    def envelope(self) -> dict[str, Any]:
        """Frame sent to WebSocket subscribers."""
        return {"event": self.name, "channel": self.channel, "data": self.payload()}


def locked_event(
    resource_type: str,
    resource_id: str,
    owner_id: str,
    acquired_at: datetime,
    channel: str,
    owner_name: str | None = None,
    origin: str | None = None,
) -> LockEvent:
    return LockEvent(
        kind=LockEventKind.locked,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_at=acquired_at,
        channel=channel,
        owner_id=owner_id,
        owner_name=owner_name,
        origin=origin,
    )


def unlocked_event(
    resource_type: str, resource_id: str, occurred_at: datetime, channel: str, origin: str | None = None
) -> LockEvent:
    return LockEvent(
        kind=LockEventKind.unlocked,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_at=occurred_at,
        channel=channel,
        origin=origin,
    )
