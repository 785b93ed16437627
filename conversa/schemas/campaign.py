from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class SegmentFilter(BaseModel):
    field: str
    operator: str
    value: Any = None
    custom_field: Optional[str] = None


class SegmentPreviewRequest(BaseModel):
    filters: list[SegmentFilter] = Field(default_factory=list)
    sample_size: int = Field(default=10, ge=0, le=100)


class SegmentPreviewResponse(BaseModel):
    total: int
    sample: list[str]


class CampaignActionResponse(BaseModel):
    success: bool
    campaign_id: UUID
    status: str
    scheduled: Optional[int] = None


class CampaignAnalytics(BaseModel):
    campaign_id: UUID
    status: str
    total_contacts: int
    sent_count: int
    delivered_count: int
    read_count: int
    failed_count: int
    progress_percentage: float
    success_rate: float
    read_rate: float
    rate_limit_per_minute: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
