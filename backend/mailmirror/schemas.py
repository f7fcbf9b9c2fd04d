"""Pydantic schemas for API."""
from datetime import datetime
from pydantic import BaseModel, field_validator
from typing import Optional, List


class EmailMetadata(BaseModel):
    message_id: str
    thread_id: str
    subject: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    date: Optional[datetime] = None
    labels: List[str] = []
    snippet: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("labels", mode="before")
    @classmethod
    def labels_or_empty(cls, v):
        return v or []

    class Config:
        from_attributes = True


class EmailList(BaseModel):
    emails: List[EmailMetadata]
    total: int
    offset: int
    limit: int


class EmailDetail(EmailMetadata):
    html: str


class ThreadSummaryResponse(BaseModel):
    thread_id: str
    snippet: Optional[str] = None
    history_id: Optional[str] = None
    labels: List[str] = []
    last_update: Optional[datetime] = None

    @field_validator("labels", mode="before")
    @classmethod
    def labels_or_empty(cls, v):
        return v or []

    class Config:
        from_attributes = True


class ThreadList(BaseModel):
    threads: List[ThreadSummaryResponse]
    total: int
    offset: int
    limit: int


class ThreadDetailResponse(ThreadSummaryResponse):
    emails: List[EmailMetadata]


class ClearResponse(BaseModel):
    emails: int
    threads: int
    pending_sync: int


class BackfillStepResponse(BaseModel):
    success: bool = True
    user_id: int
    synced: int
    examined: int
    remaining: bool


class NotificationResponse(BaseModel):
    status: str  # applied | stale | resync_scheduled
    user_id: int
    history_id: str
    previous_history_id: str
    added: int = 0
    skipped: int = 0


class WatchResponseSchema(BaseModel):
    history_id: str
    expiration: Optional[datetime] = None
    baseline_initialized: bool
    backfill_scheduled: bool


class SyncStatusResponse(BaseModel):
    prev_history_id: Optional[str] = None
    backfill_pending: bool
    next_page_token: Optional[str] = None
    watch_expiration: Optional[datetime] = None


class ErrorResponse(BaseModel):
    status: str = "error"
    kind: str
    detail: str
    retryable: bool = False
