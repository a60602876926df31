"""
Pydantic schemas for the extension job claim/report protocol.
"""
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import AliasChoices, BaseModel, Field, ConfigDict

class ClaimRequest(BaseModel):
    """Worker asks for the next listing job of the authenticated user."""
    worker_id: Optional[str] = Field(
        None,
        max_length=200,
        validation_alias=AliasChoices("worker_id", "preferred_worker_id"),
        description="Stable id of the extension instance; defaults to one id per user",
    )
    preferred_store_id: Optional[str] = Field(None, description="Claim this store's jobs first when any are eligible")
    job_type: Optional[str] = Field(None, description="Only LISTING_CREATE is served; other types are ignored")

class ReportRequest(BaseModel):
    job_id: str = Field(min_length=1)
    worker_id: Optional[str] = None
    status: str = Field(min_length=1, description="completed|failed|processing (done/success/error accepted)")
    step: Optional[str] = Field(None, description="Free-form progress step used when status is ambiguous")
    error: Optional[str] = Field(None, max_length=4000)
    external_refs: Optional[Dict[str, Any]] = None
    job_type: Optional[str] = None

class ListingJobRead(BaseModel):
    id: str
    user_id: str
    store_id: Optional[str] = None
    job_type: str
    status: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    payload_version: int = 1
    attempt_count: int = 0
    claimed_at: Optional[datetime] = None
    claimed_by_worker_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class EnqueueRequest(BaseModel):
    """Raw listing row as produced by the catalog import (loosely typed on purpose)."""
    store_id: Optional[str] = None
    row: Dict[str, Any]
