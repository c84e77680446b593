# app/schemas/security.py
from typing import Optional

from pydantic import BaseModel, Field


class ThreatCountsRead(BaseModel):
    sqli: int = 0
    xss: int = 0
    path_traversal: int = 0
    total: int = 0


class IPStatus(BaseModel):
    ip: str
    blocked: bool
    reason: Optional[str] = None
    remaining_seconds: Optional[float] = None
    threats: ThreatCountsRead
    failed_logins: int = 0


class BlockRequest(BaseModel):
    reason: str = Field(default="Manually blocked by administrator", max_length=200)
    minutes: int = Field(default=60, ge=1, le=60 * 24 * 30)
