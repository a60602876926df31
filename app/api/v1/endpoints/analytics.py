"""
Revenue analytics endpoints (admin only).
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
import time
from app.api.deps import get_db, get_ledger_registry, require_admin
from app.models.db import User
from app.models.schemas.base import ResponseBase
from app.services.ledger_client import LedgerClientRegistry
from app.services.revenue import build_revenue_trend
from app.utils import get_logger, log_performance
from app.utils.observability import request_id_of

router = APIRouter()
logger = get_logger(__name__)

@router.get(
    "/revenue-trend",
    response_model=ResponseBase,
    summary="Monthly recurring revenue trend"
)
async def revenue_trend(
    request: Request,
    months: Optional[str] = Query(None, description="1-24, default 12"),
    mode: Optional[str] = Query("all", description="live, test or all"),
    currency: Optional[str] = Query("all", description="all, usd or try"),
    admin: User = Depends(require_admin),
    registry: LedgerClientRegistry = Depends(get_ledger_registry),
    db: Session = Depends(get_db)
) -> ResponseBase:
    """Invalid query values fall back to their defaults instead of failing the request."""
    start_time = time.time()
    request_id = request_id_of(request)
    try:
        trend = build_revenue_trend(db, registry, months=months, mode=mode, currency=currency)
    except Exception as e:
        logger.error("Revenue trend failed", error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to build revenue trend")

    log_performance(
        operation="revenue_trend",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"months": trend["months"], "source": trend["source"]}
    )
    return ResponseBase(success=True, message=f"Revenue trend ({trend['source']})", data=trend)
