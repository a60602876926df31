"""
Payment reconciliation endpoints (admin only).
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
import time
from app.api.deps import get_db, get_ledger_registry, require_admin
from app.models.db import User
from app.models.schemas.base import ResponseBase
from app.models.schemas.reconciliation import ReconciliationRequest
from app.services.ledger_client import LedgerClientRegistry
from app.services.reconciliation_engine import ReconciliationUnavailable, reconcile_payments
from app.utils import get_logger, log_business_event, log_performance
from app.utils.observability import request_id_of

router = APIRouter()
logger = get_logger(__name__)

@router.post(
    "/payments",
    response_model=ResponseBase,
    summary="Reconcile one-time checkout payments against the ledger"
)
async def reconcile(
    body: ReconciliationRequest,
    request: Request,
    admin: User = Depends(require_admin),
    registry: LedgerClientRegistry = Depends(get_ledger_registry),
    db: Session = Depends(get_db)
) -> ResponseBase:
    """Scan ledger checkout sessions inside the window and upsert paid ones.

    A failing mode is reported in ``warnings``; only when every requested
    mode fails does the call answer 500.
    """
    start_time = time.time()
    request_id = request_id_of(request)

    logger.info(
        "Payment reconciliation requested",
        mode=body.mode,
        window_days=body.window_days,
        max_sessions=body.max_sessions,
        dry_run=body.dry_run,
        request_id=request_id
    )

    try:
        result = reconcile_payments(
            db,
            registry,
            mode=body.mode,
            window_days=body.window_days,
            max_sessions=body.max_sessions,
            dry_run=body.dry_run,
            max_pages=body.max_pages,
        )
    except ReconciliationUnavailable as e:
        logger.error("Payment reconciliation unavailable", warnings=e.warnings, request_id=request_id)
        raise HTTPException(status_code=500, detail={"message": str(e), "warnings": e.warnings})
    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.error("Payment reconciliation failed", error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Payment reconciliation failed")

    log_business_event(
        event_type="manual_payment_reconciliation",
        details={"mode": body.mode, "dry_run": body.dry_run, "synced": result.synced},
        user_id=admin.id,
        request_id=request_id
    )
    log_performance(
        operation="reconcile_payments",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"scanned": result.scanned, "modes": result.processed_modes}
    )
    return ResponseBase(
        success=True,
        message=f"Synced {result.synced} of {result.paid_candidates} paid session(s)",
        data=result.to_dict()
    )
