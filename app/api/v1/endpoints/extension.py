"""
Extension worker endpoints: claim the next listing job, report its outcome.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
import time
from app.api.deps import get_db, get_current_user
from app.config import JOB_QUEUE_SETTINGS
from app.models.db import User
from app.models.schemas.base import ResponseBase
from app.models.schemas.jobs import ClaimRequest, ReportRequest, ListingJobRead, EnqueueRequest
from app.services.job_store import claim_next, report_outcome, normalize_report_status, enqueue_listing_job
from app.utils import get_logger, log_business_event, log_performance
from app.utils.observability import request_id_of

router = APIRouter()
logger = get_logger(__name__)

def _is_foreign_job_type(job_type: str | None) -> bool:
    return bool(job_type) and job_type != JOB_QUEUE_SETTINGS["job_type"]

def resolve_worker_id(worker_id: str | None, user: User) -> str:
    """Extensions that send no worker id share one per-user identity."""
    worker_id = (worker_id or "").strip()
    return worker_id or f"user:{user.id}"

@router.post(
    "/claim-next",
    response_model=ResponseBase,
    summary="Claim the next listing job for this worker"
)
async def claim_next_job(
    claim: ClaimRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ResponseBase:
    """Atomically move one eligible job to ``processing`` for the calling worker.

    Returns ``data.job = null`` when nothing is claimable, including when the
    user has no active subscription.
    """
    start_time = time.time()
    request_id = request_id_of(request)

    if _is_foreign_job_type(claim.job_type):
        logger.info("Claim ignored for unsupported job type", job_type=claim.job_type, request_id=request_id)
        return ResponseBase(success=True, message="Job type ignored", data={"job": None, "ignored": True})

    try:
        worker_id = resolve_worker_id(claim.worker_id, current_user)
        job = claim_next(db, current_user.id, worker_id, preferred_store_id=claim.preferred_store_id)
        log_performance(
            operation="claim_next_job",
            duration_ms=(time.time() - start_time) * 1000,
            additional_data={"claimed": job is not None}
        )
        if job is None:
            return ResponseBase(success=True, message="No job available", data={"job": None})

        return ResponseBase(
            success=True,
            message="Job claimed",
            data={"job": ListingJobRead.model_validate(job).model_dump(mode="json")}
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "Job claim failed",
            user_id=current_user.id,
            worker_id=claim.worker_id,
            error=str(e),
            request_id=request_id,
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Failed to claim job")

@router.post(
    "/report",
    response_model=ResponseBase,
    summary="Report progress or the final outcome of a claimed job"
)
async def report_job(
    report: ReportRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ResponseBase:
    """Rejected reports (wrong owner, lost race, ...) are answered with 200 and
    ``accepted = false`` so the worker can drop the job without retrying."""
    request_id = request_id_of(request)

    if _is_foreign_job_type(report.job_type):
        return ResponseBase(
            success=True,
            message="Job type ignored",
            data={"accepted": True, "updated": False, "status": None, "reason": None, "ignored": True}
        )

    try:
        status_value = normalize_report_status(report.status, report.step)
        result = report_outcome(
            db,
            current_user.id,
            report.job_id,
            report.worker_id,
            status_value,
            error=report.error,
            external_refs=report.external_refs,
        )
        if result.updated and result.status != status_value:
            log_business_event(
                event_type="listing_completion_downgraded",
                details={"job_id": report.job_id, "reported": status_value, "stored": result.status},
                user_id=current_user.id,
                request_id=request_id
            )
        return ResponseBase(
            success=True,
            message="Report accepted" if result.accepted else "Report rejected",
            data=result.to_dict()
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "Job report failed",
            job_id=report.job_id,
            error=str(e),
            request_id=request_id,
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Failed to record job report")

@router.post(
    "/jobs",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Queue a listing job from an imported catalog row"
)
async def enqueue_job(
    body: EnqueueRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    try:
        job = enqueue_listing_job(db, current_user.id, body.store_id, body.row)
        return ResponseBase(
            success=True,
            message="Job queued",
            data={"job": ListingJobRead.model_validate(job).model_dump(mode="json")}
        )
    except Exception as e:
        db.rollback()
        logger.error("Job enqueue failed", user_id=current_user.id, error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to queue job")
