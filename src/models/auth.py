from datetime import datetime

from pydantic import BaseModel, EmailStr


class OperatorLoginRequest(BaseModel):
    email: EmailStr
    password: str


class OperatorLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class OperatorMeResponse(BaseModel):
    operator_id: str
    email: str


class MetricsSnapshotRecord(BaseModel):
    id: str
    source: str
    request_id: str | None = None
    counters: dict
    created_at: datetime


class MetricsSnapshotFlushRequest(BaseModel):
    source: str = "operator_flush"
    reset_after_persist: bool = False


class MetricsSnapshotFlushResponse(BaseModel):
    persisted: bool
    source: str
    counter_count: int
