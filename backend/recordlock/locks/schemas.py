# backend/recordlock/locks/schemas.py
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class LockKeyIn(BaseModel):
    resource_type: str = Field(min_length=1, max_length=255)  # e.g. "Invoice"
    resource_id: str = Field(min_length=1, max_length=255)


class LockAcquireIn(LockKeyIn):
    pass


class LockReleaseIn(LockKeyIn):
    pass


class LockOut(BaseModel):
    id: int
    resource_type: str
    resource_id: str
    owner_id: str
    acquired_at: datetime
    expires_at: datetime
    remaining_sec: int
    mine: bool


class LockOwnerOut(BaseModel):
    resource_type: str
    resource_id: str
    owner_id: Optional[str] = None


class ReleaseOut(BaseModel):
    released: bool


class SweepIn(BaseModel):
    timeout: Optional[int] = Field(default=None, ge=1)
    tenants: List[str] = Field(default_factory=list)


class SweepOut(BaseModel):
    counts: Dict[str, int]
    failures: Dict[str, str]
    skipped: bool
    total: int
