"""
Request / response schemas for the pipeline, operator and OAuth endpoints.
"""
from typing import Optional
from pydantic import BaseModel, Field


class QueueMoveRequest(BaseModel):
    opportunity_id: str = Field(..., min_length=1, max_length=64)
    clinic: str = Field(..., min_length=1, max_length=16)
    from_stage: Optional[str] = None
    to_stage: str


class QueueMoveResponse(BaseModel):
    success: bool = True
    move_id: str
    effective_stage: str


class DealTypeRequest(BaseModel):
    contact_id: str = Field(..., min_length=1, max_length=64)
    clinic: str = Field(..., min_length=1, max_length=16)
    deal_type: Optional[str] = None


class DealTypeResponse(BaseModel):
    success: bool = True
    move_id: str
    opportunities_updated: int = 0


class SyncStateResponse(BaseModel):
    status: str
    pending_count: int
    failed_count: int
    last_sync_at: Optional[str] = None
    last_error: Optional[str] = None
    needs_reauth: list[str] = []


class ProcessSyncResponse(BaseModel):
    processed: int = 0
    failed: int = 0
    remaining: Optional[int] = None
    skipped: bool = False


class QueuedMoveSummary(BaseModel):
    id: str
    move_type: str
    record_id: str
    clinic: str
    status: str
    attempts: int
    to_stage: Optional[str] = None
    field_key: Optional[str] = None
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    created_at: Optional[str] = None


class QueueInspectionResponse(BaseModel):
    counts: dict[str, int]
    moves: list[QueuedMoveSummary]


class ResetFailedResponse(BaseModel):
    success: bool = True
    action: str
    affected: int
    overrides_cleared: int = 0
