from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, UniqueConstraint, Index
from ..shared.clock import as_utc
from ..shared.db import Base


class EditLock(Base):
    __tablename__ = "edit_locks"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resource_type: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # naive UTC, see shared.clock.to_db
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("resource_type", "resource_id", name="uq_edit_locks_resource"),
        Index("ix_edit_locks_owner_acquired", "owner_id", "acquired_at"),
    )


class ResourceKey(NamedTuple):
    resource_type: str
    resource_id: str


@dataclass(frozen=True)
class LockRecord:
    """Detached snapshot of one edit_locks row."""

    id: int
    resource_type: str
    resource_id: str
    owner_id: str
    acquired_at: datetime
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.resource_type, self.resource_id)

    @classmethod
    def from_row(cls, row) -> "LockRecord":
        return cls(
            id=row["id"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            owner_id=row["owner_id"],
            acquired_at=as_utc(row["acquired_at"]),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )
