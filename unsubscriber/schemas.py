from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class BulkEmailAction(BaseModel):
    email_ids: list[int]


class EnqueueResult(BaseModel):
    email_id: int
    job_id: int
    status: str


class AttemptResponse(BaseModel):
    id: int
    email_id: int
    status: str
    method: Optional[str] = None
    unsubscribe_url: Optional[str] = None
    error_message: Optional[str] = None
    attempted_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobResponse(BaseModel):
    id: int
    email_id: int
    status: str
    attempts: int
    max_attempts: int
    run_after: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
