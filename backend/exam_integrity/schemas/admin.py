from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PauseRequest(BaseModel):
    reason: str = Field(..., max_length=500)


class ForceSubmitRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class InvalidateRequest(BaseModel):
    reason: str = Field(..., max_length=500)


class AuditLogEntry(BaseModel):
    id: int
    attempt_id: Optional[int] = None
    user_id: str
    exam_id: Optional[int] = None
    event_type: str
    timestamp: Optional[str] = None
    metadata: Dict[str, Any] = {}
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None


class AuditLogQuery(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)
    skip: int = Field(default=0, ge=0)
    event_type: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
