"""
Admin ops schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, List, Optional


class SchedulerSummaryResponse(BaseModel):
    """Result of a trip completion sweep."""
    processed: int
    completed: int
    cancelled: int
    failed: int
    skipped: int
    completed_trip_ids: List[int]
    cancelled_trip_ids: List[int]
    failed_trip_ids: List[int]
    skipped_trip_ids: List[int]
    payouts_created: int
    payouts_failed: int

    class Config:
        from_attributes = True


class DLQItemResponse(BaseModel):
    id: int
    task_name: str
    error_message: str
    payload: Optional[Dict[str, Any]]
    status: str
    retry_count: int
    last_retry_at: Optional[datetime]

    class Config:
        from_attributes = True


class AuditLogResponse(BaseModel):
    id: int
    actor_id: Optional[int]
    actor_username: Optional[str]
    action: str
    status: str
    entity_type: Optional[str]
    entity_id: Optional[int]
    meta_data: Optional[Dict[str, Any]]
    timestamp: datetime

    class Config:
        from_attributes = True
