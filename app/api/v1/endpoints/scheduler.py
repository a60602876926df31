"""
Scheduler endpoints: cron-driven ticks, cron lifecycle bootstrap and
user-initiated automation triggers.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.orm import Session
import time
from app.api.deps import get_db, get_current_user, require_admin, require_cron_or_admin
from app.models.db import User
from app.models.db.enums import UserRole
from app.models.schemas.base import ResponseBase
from app.models.schemas.webhooks import AutomationSwitchRequest, ActivationRequest
from app.services.cron_lifecycle import sync_scheduler_cron_lifecycle
from app.services.cron_tests import run_cron_test_tick
from app.services.dispatch_runner import (
    DuplicateTriggerError,
    StoreNotFound,
    TriggerRejected,
    load_store,
    run_scheduler_tick,
    trigger_activation,
    trigger_manual_switch,
)
from app.services.webhook_configs import WebhookConfigNotFound
from app.utils import get_logger, log_business_event, log_performance
from app.utils.observability import request_id_of

router = APIRouter()
logger = get_logger(__name__)

@router.post("/tick", response_model=ResponseBase, summary="Run one scheduler tick")
async def scheduler_tick(
    request: Request,
    caller: Optional[User] = Depends(require_cron_or_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    """Dispatch every due subscription slot. Safe to call repeatedly: slots are
    idempotent per scheduled key."""
    start_time = time.time()
    request_id = request_id_of(request)
    try:
        summary = await run_scheduler_tick(db)
    except Exception as e:
        db.rollback()
        logger.error("Scheduler tick failed", error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Scheduler tick failed")

    log_performance(
        operation="scheduler_tick",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"total": summary.total, "triggered": summary.triggered}
    )
    return ResponseBase(
        success=True,
        message=f"Triggered {summary.triggered} of {summary.total} subscription(s)",
        data=summary.to_dict()
    )

@router.post("/cron-tests/tick", response_model=ResponseBase, summary="Run one cron test tick")
async def cron_test_tick(
    request: Request,
    caller: Optional[User] = Depends(require_cron_or_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        summary = await run_cron_test_tick(db)
    except Exception as e:
        db.rollback()
        logger.error("Cron test tick failed", error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Cron test tick failed")
    return ResponseBase(success=True, message=f"Triggered {summary.triggered} cron test(s)", data=summary.to_dict())

@router.post("/bootstrap", response_model=ResponseBase, summary="Register or refresh the external cron job")
async def bootstrap_cron(
    request: Request,
    force: bool = Query(False, description="Ignore the sync cooldown"),
    admin: User = Depends(require_admin)
) -> ResponseBase:
    result = await sync_scheduler_cron_lifecycle(force=force)
    log_business_event(
        event_type="scheduler_cron_synced",
        details={"status": result.status, "job_id": result.job_id},
        user_id=admin.id,
        request_id=request_id_of(request)
    )
    # skipped (no key, rate limited) is not an error for the caller
    return ResponseBase(success=result.ok or result.status == "skipped", message=result.message, data=result.to_dict())

@router.post(
    "/stores/{store_id}/automation-switch",
    response_model=ResponseBase,
    summary="Point a store at another automation webhook and fire it now"
)
async def automation_switch(
    store_id: str,
    body: AutomationSwitchRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    store = load_store(db, store_id)
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Store {store_id} not found")
    if current_user.role != UserRole.ADMIN and store.get("user_id") != current_user.id:
        logger.warning("Automation switch denied: store owned by another user", store_id=store_id, user_id=current_user.id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    try:
        outcome = await trigger_manual_switch(db, store_id, body.webhook_config_id, current_user.id)
    except StoreNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Store {store_id} not found")
    except WebhookConfigNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Webhook config {body.webhook_config_id} not found")
    except TriggerRejected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"code": e.code, "message": str(e)})
    except DuplicateTriggerError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"message": str(e), "idempotency_key": e.idempotency_key})
    except Exception as e:
        db.rollback()
        logger.error("Automation switch failed", store_id=store_id, error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Automation switch failed")

    return ResponseBase(
        success=outcome.status == "triggered",
        message="Automation triggered" if outcome.status == "triggered" else "Automation dispatch failed",
        data=outcome.to_dict()
    )

@router.post(
    "/subscriptions/{subscription_id}/activation",
    response_model=ResponseBase,
    summary="Fire the first automation run of a billing period"
)
async def subscription_activation(
    subscription_id: str,
    request: Request,
    body: Optional[ActivationRequest] = None,
    caller: Optional[User] = Depends(require_cron_or_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        outcome = await trigger_activation(db, subscription_id, body.store_id if body else None)
    except TriggerRejected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"code": e.code, "message": str(e)})
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.error("Activation trigger failed", subscription_id=subscription_id, error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Activation trigger failed")

    return ResponseBase(success=outcome.status != "failed", message=f"Activation {outcome.status}", data=outcome.to_dict())
