"""
Webhook configuration, cron test and dispatch log endpoints (admin only).
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.orm import Session
from app.api.deps import get_db, require_admin
from app.models.db import User
from app.models.schemas.base import ResponseBase
from app.models.schemas.webhooks import WebhookConfigCreate, WebhookConfigUpdate, CronTestCreate, CronTestUpdate
from app.services import cron_tests
from app.services.audit_log import list_audit_logs
from app.services.webhook_configs import (
    DuplicateConfigError,
    WebhookConfigNotFound,
    WebhookConfigValidationError,
    create_config,
    delete_config,
    list_configs,
    update_config,
)
from app.utils import get_logger, log_business_event
from app.utils.observability import request_id_of

router = APIRouter()
logger = get_logger(__name__)

def _translate(e: Exception, request_id: str, action: str) -> HTTPException:
    """Map service errors onto HTTP statuses; unknown errors become a logged 500."""
    if isinstance(e, WebhookConfigValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, WebhookConfigNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Webhook config {e} not found")
    if isinstance(e, DuplicateConfigError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.error(f"Webhook config {action} failed", error=str(e), request_id=request_id, exc_info=True)
    return HTTPException(status_code=500, detail=f"Failed to {action} webhook config")

@router.get("/configs", response_model=ResponseBase, summary="List webhook configs")
async def get_configs(
    request: Request,
    scope: Optional[str] = Query(None, description="automation or generic"),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    rows = list_configs(db, scope)
    return ResponseBase(success=True, message=f"{len(rows)} config(s)", data={"configs": rows})

@router.post(
    "/configs",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Create a webhook config"
)
async def post_config(
    body: WebhookConfigCreate,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        row = create_config(db, body.model_dump())
    except Exception as e:
        db.rollback()
        raise _translate(e, request_id, "create")
    log_business_event(
        event_type="webhook_config_created",
        details={"config_id": row.get("id"), "scope": row.get("scope"), "product_id": row.get("product_id")},
        user_id=admin.id,
        request_id=request_id
    )
    return ResponseBase(success=True, message="Webhook config created", data={"config": row})

@router.patch("/configs/{config_id}", response_model=ResponseBase, summary="Update a webhook config")
async def patch_config(
    config_id: str,
    body: WebhookConfigUpdate,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        row = update_config(db, config_id, body.model_dump(exclude_unset=True))
    except Exception as e:
        db.rollback()
        raise _translate(e, request_id, "update")
    return ResponseBase(success=True, message="Webhook config updated", data={"config": row})

@router.delete("/configs/{config_id}", response_model=ResponseBase, summary="Delete a webhook config")
async def remove_config(
    config_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        delete_config(db, config_id)
    except Exception as e:
        db.rollback()
        raise _translate(e, request_id, "delete")
    log_business_event(
        event_type="webhook_config_deleted",
        details={"config_id": config_id},
        user_id=admin.id,
        request_id=request_id
    )
    return ResponseBase(success=True, message="Webhook config deleted", data={"id": config_id})

# --------------------------------------------------------------------------- #
# Cron tests
# --------------------------------------------------------------------------- #

@router.get("/cron-tests", response_model=ResponseBase, summary="List cron test webhooks")
async def get_cron_tests(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    rows = cron_tests.load_cron_test_configs(db)
    latest = cron_tests.load_latest_runs(db)
    for row in rows:
        last_run = latest.get(row["id"])
        row["last_run_at"] = last_run.isoformat() if last_run else None
    return ResponseBase(success=True, message=f"{len(rows)} cron test(s)", data={"cron_tests": rows})

@router.post(
    "/cron-tests",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Create a cron test webhook"
)
async def post_cron_test(
    body: CronTestCreate,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        row = cron_tests.create_cron_test_config(db, body.model_dump())
    except Exception as e:
        db.rollback()
        raise _translate(e, request_id, "create")
    return ResponseBase(success=True, message="Cron test created", data={"cron_test": row})

@router.patch("/cron-tests/{config_id}", response_model=ResponseBase, summary="Update a cron test webhook")
async def patch_cron_test(
    config_id: str,
    body: CronTestUpdate,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        row = cron_tests.update_cron_test_config(db, config_id, body.model_dump(exclude_unset=True))
    except Exception as e:
        db.rollback()
        raise _translate(e, request_id, "update")
    return ResponseBase(success=True, message="Cron test updated", data={"cron_test": row})

@router.delete("/cron-tests/{config_id}", response_model=ResponseBase, summary="Delete a cron test webhook")
async def remove_cron_test(
    config_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        cron_tests.delete_cron_test_config(db, config_id)
    except Exception as e:
        db.rollback()
        raise _translate(e, request_id, "delete")
    return ResponseBase(success=True, message="Cron test deleted", data={"id": config_id})

@router.post("/cron-tests/{config_id}/trigger", response_model=ResponseBase, summary="Fire a cron test now")
async def trigger_cron_test(
    config_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        result = await cron_tests.trigger_cron_test_now(db, config_id)
    except Exception as e:
        db.rollback()
        raise _translate(e, request_id, "trigger")
    return ResponseBase(
        success=result.ok,
        message="Cron test dispatched" if result.ok else "Cron test dispatch failed",
        data={"ok": result.ok, "status": result.status, "duration_ms": result.duration_ms}
    )

# --------------------------------------------------------------------------- #
# Dispatch log
# --------------------------------------------------------------------------- #

@router.get("/logs", response_model=ResponseBase, summary="Recent outbound webhook calls")
async def get_logs(
    method: Optional[str] = Query(None, description="Filter by stored request method (POST, CRON_TEST, STORE_WEBHOOK_MAP, ...)"),
    limit: int = Query(100, ge=1, le=1000),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
) -> ResponseBase:
    rows = list_audit_logs(db, method=method, limit=limit)
    return ResponseBase(success=True, message=f"{len(rows)} log row(s)", data={"logs": rows})
