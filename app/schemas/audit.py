# app/schemas/audit.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class Severity(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    HIGH = "HIGH"


class AuditCategory(str, Enum):
    SECURITY = "SECURITY"
    USER_ACTION = "USER_ACTION"
    AUTHENTICATION = "AUTHENTICATION"
    OAUTH2 = "OAUTH2"
    ACCESS = "ACCESS"


class AuditRecord(BaseModel):
    id: str
    timestamp: datetime
    event_type: str
    category: AuditCategory
    severity: Severity
    user_id: Optional[str] = None
    description: Optional[str] = None
    details: Optional[str] = None

    # 依類別才會出現的欄位
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    successful: Optional[bool] = None
    provider: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    response_status: Optional[int] = None
    response_time_ms: Optional[float] = None


class AuditRecordList(BaseModel):
    count: int
    items: List[AuditRecord]
