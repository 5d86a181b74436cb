from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class OutboxMessageResponse(BaseModel):
    """Operator view of one outbox message. The payload itself is not exposed."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: str
    event_type: str
    created_at: datetime
    processed: bool
    processed_at: Optional[datetime] = None
    retry_count: int
    last_error: Optional[str] = None
    correlation_id: Optional[str] = None
    trace_id: Optional[str] = None
    locked_by: Optional[str] = None
    lease_until: Optional[datetime] = None


class OutboxSettingsResponse(BaseModel):
    interval_seconds: int
    max_retry_attempts: int
    batch_size: int
    lease_seconds: int
    dispatch_concurrency: int


class OutboxStatsResponse(BaseModel):
    pending: int = Field(..., description="Messages waiting for (re)delivery.")
    quarantined: int = Field(..., description="Messages that hit the retry ceiling and need an operator.")
    settings: OutboxSettingsResponse
