"""
Pydantic schemas for payment reconciliation and revenue analytics.
"""
from typing import Optional, Literal
from pydantic import BaseModel, Field

class ReconciliationRequest(BaseModel):
    """Out-of-range window/session values are clamped by the engine, not rejected."""
    mode: Literal["live", "test", "all"] = "all"
    window_days: Optional[int] = Field(None, description="1..3650, default 180")
    max_sessions: Optional[int] = Field(None, description="20..2000, default 500")
    max_pages: Optional[int] = Field(None, description="Ledger pages per mode, 1..100, default 100")
    dry_run: bool = False
