"""Listing job queue: claim / report for extension workers.

Claim algorithm (``claim_next``):
1. Subscription gate: a user without an active subscription gets ``None``
   before any job row is read or written.
2. Stuck recovery: ``processing`` rows with no owner that have not moved for
   ``stuck_recovery_seconds`` are failed with a fixed message so they stop
   blocking the queue.
3. Candidate scan (oldest ``created_at`` first, then ``id``; the preferred
   store, when given, goes first):
     * pending statuses (queued / pending / retry / failed_retryable)
     * ``processing`` whose claim is older than ``stale_processing_seconds``
       (lost worker)
     * ``processing`` claimed by the *same* worker more than
       ``self_retry_seconds`` ago (extension reload)
4. Each candidate is taken with a compare-and-swap on ``status`` +
   ``lock_version``. A lost race moves on to the next candidate; after
   ``claim_rounds`` batches with no win the call returns ``None``.

Report algorithm (``report_outcome``):
* The effective status is computed first: ``completed`` without a listing
  proof (remote listing id, or a listing URL that is not an editor page) is
  downgraded to ``failed``.
* Re-reporting the terminal status the job already holds is accepted as a
  no-op (``updated=False``), whoever sends it.
* Otherwise the job must be ``processing`` and owned by the reporting worker;
  a ``processing`` report is a heartbeat that refreshes ``claimed_at``.
* Terminal transitions use the same CAS guard; losing it is a benign
  rejection (``lost_race``), not an error.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import Session

from app.config import JOB_QUEUE_SETTINGS
from app.models.db.enums import ListingJobStatus
from app.models.db.listing_jobs import ListingJob
from app.services.listing_payload import LISTING_PAYLOAD_VERSION, build_listing_payload
from app.services.storage import CasOutcome, compare_and_swap
from app.services.subscriptions import user_has_active_subscription
from app.utils import get_logger
from app.utils.time import utc_now

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({ListingJobStatus.COMPLETED.value, ListingJobStatus.FAILED.value})
EDITOR_URL_MARKER = "/listing-editor/"
MISSING_PROOF_MESSAGE = "Completion reported without listing proof"

_LISTING_ID_KEYS = ("etsy_listing_id", "listing_id", "etsyListingId", "listingId")
_LISTING_URL_KEYS = ("listing_url", "etsy_listing_url", "listingUrl", "url")


@dataclass
class ReportResult:
    accepted: bool
    updated: bool
    status: str | None = None
    reason: str | None = None
    job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _setting(name: str) -> Any:
    return JOB_QUEUE_SETTINGS[name]


def normalize_report_status(status: str | None, step: str | None = None) -> str:
    """Collapse the worker's free-form status/step vocabulary onto the job lifecycle."""
    value = (status or "").strip().lower()
    if value in {"done", "success", "completed"}:
        return ListingJobStatus.COMPLETED.value
    if value in {"error", "failed"}:
        return ListingJobStatus.FAILED.value
    hint = (step or "").strip().lower()
    if "done" in hint or "success" in hint:
        return ListingJobStatus.COMPLETED.value
    if "error" in hint or "failed" in hint:
        return ListingJobStatus.FAILED.value
    return ListingJobStatus.PROCESSING.value


def _first_text(refs: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = refs.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def extract_listing_proof(external_refs: Mapping[str, Any] | None) -> tuple[str | None, str | None]:
    """(listing_id, listing_url) usable as completion proof; editor URLs do not count."""
    refs = external_refs or {}
    listing_id = _first_text(refs, _LISTING_ID_KEYS)
    listing_url = _first_text(refs, _LISTING_URL_KEYS)
    if listing_url and EDITOR_URL_MARKER in listing_url:
        listing_url = None
    return listing_id, listing_url


def _effective_outcome(status: str, error: str | None, external_refs: Mapping[str, Any] | None) -> tuple[str, str | None]:
    if status == ListingJobStatus.COMPLETED.value:
        listing_id, listing_url = extract_listing_proof(external_refs)
        if not listing_id and not listing_url:
            return ListingJobStatus.FAILED.value, error or MISSING_PROOF_MESSAGE
        return status, None
    return status, error


def enqueue_listing_job(
    session: Session,
    user_id: str,
    store_id: str | None,
    row: Mapping[str, Any],
) -> ListingJob:
    payload = build_listing_payload(row, client_id=store_id)
    job = ListingJob(
        user_id=user_id,
        store_id=store_id,
        job_type=str(_setting("job_type")),
        status=ListingJobStatus.QUEUED.value,
        payload=payload,
        payload_version=LISTING_PAYLOAD_VERSION,
    )
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.info("Listing job enqueued", job_id=job.id, user_id=user_id, store_id=store_id)
    return job


def recover_stuck_jobs(session: Session, user_id: str, now: datetime | None = None) -> int:
    """Fail ownerless processing rows that have not moved for the recovery window."""
    now = now or utc_now()
    cutoff = now - timedelta(seconds=int(_setting("stuck_recovery_seconds")))
    last_touch = func.coalesce(ListingJob.claimed_at, ListingJob.updated_at, ListingJob.created_at)
    result = session.execute(
        update(ListingJob.__table__)
        .where(
            ListingJob.user_id == user_id,
            ListingJob.job_type == str(_setting("job_type")),
            ListingJob.status == ListingJobStatus.PROCESSING.value,
            ListingJob.claimed_by_worker_id.is_(None),
            last_touch < cutoff,
        )
        .values(
            status=ListingJobStatus.FAILED.value,
            last_error=str(_setting("stuck_recovery_message")),
            updated_at=now,
            lock_version=ListingJob.lock_version + 1,
        )
    )
    session.commit()
    recovered = result.rowcount or 0
    if recovered:
        logger.warning("Recovered stuck listing jobs", user_id=user_id, count=recovered)
    return recovered


def _eligible_candidates(
    session: Session,
    user_id: str,
    worker_id: str,
    now: datetime,
    preferred_store_id: str | None,
    exclude: set[str],
) -> list[Any]:
    stale_before = now - timedelta(seconds=int(_setting("stale_processing_seconds")))
    self_retry_before = now - timedelta(seconds=int(_setting("self_retry_seconds")))
    processing = ListingJobStatus.PROCESSING.value
    stmt = (
        select(ListingJob.id, ListingJob.status, ListingJob.lock_version, ListingJob.attempt_count)
        .where(
            ListingJob.user_id == user_id,
            ListingJob.job_type == str(_setting("job_type")),
            or_(
                ListingJob.status.in_(list(_setting("pending_statuses"))),
                and_(ListingJob.status == processing, ListingJob.claimed_at < stale_before),
                and_(
                    ListingJob.status == processing,
                    ListingJob.claimed_by_worker_id == worker_id,
                    ListingJob.claimed_at < self_retry_before,
                ),
            ),
        )
    )
    if exclude:
        stmt = stmt.where(ListingJob.id.not_in(list(exclude)))
    ordering = [ListingJob.created_at.asc(), ListingJob.id.asc()]
    if preferred_store_id:
        ordering.insert(0, case((ListingJob.store_id == preferred_store_id, 0), else_=1))
    stmt = stmt.order_by(*ordering).limit(int(_setting("claim_batch_size")))
    return list(session.execute(stmt).all())


def claim_next(
    session: Session,
    user_id: str,
    worker_id: str,
    now: datetime | None = None,
    *,
    preferred_store_id: str | None = None,
) -> ListingJob | None:
    now = now or utc_now()
    if not user_has_active_subscription(session, user_id, now):
        logger.info("Claim refused: no active subscription", user_id=user_id)
        return None

    recover_stuck_jobs(session, user_id, now)

    table = ListingJob.__table__
    lost: set[str] = set()
    for round_no in range(int(_setting("claim_rounds"))):
        candidates = _eligible_candidates(session, user_id, worker_id, now, preferred_store_id, lost)
        if not candidates:
            return None
        for candidate in candidates:
            outcome = compare_and_swap(
                session,
                table,
                candidate.id,
                expected={"status": candidate.status, "lock_version": candidate.lock_version},
                values={
                    "status": ListingJobStatus.PROCESSING.value,
                    "claimed_at": now,
                    "claimed_by_worker_id": worker_id,
                    "attempt_count": (candidate.attempt_count or 0) + 1,
                    "lock_version": candidate.lock_version + 1,
                    "last_error": None,
                    "updated_at": now,
                },
            )
            if outcome is CasOutcome.APPLIED:
                job = session.get(ListingJob, candidate.id)
                logger.info(
                    "Listing job claimed",
                    job_id=candidate.id,
                    user_id=user_id,
                    worker_id=worker_id,
                    previous_status=candidate.status,
                    round=round_no,
                )
                return job
            lost.add(candidate.id)
    logger.info("Claim gave up after contention", user_id=user_id, worker_id=worker_id, lost=len(lost))
    return None


def report_outcome(
    session: Session,
    user_id: str,
    job_id: str,
    worker_id: str | None,
    status: str,
    error: str | None = None,
    external_refs: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> ReportResult:
    """Apply a worker report to a processing job.

    Ownership is always checked against ``user_id``. ``worker_id`` narrows it
    further when given: a mismatch with the recorded claimer is
    ``not_claimed_by_worker``. Reports without a worker id come from clients
    that claim under the per-user identity and are accepted for any claimer
    of the user's job.
    """
    now = now or utc_now()
    job = session.get(ListingJob, job_id)
    if job is None:
        return ReportResult(accepted=False, updated=False, reason="listing_not_found", job_id=job_id)
    if job.user_id != user_id:
        return ReportResult(accepted=False, updated=False, reason="not_owner", job_id=job_id)

    effective_status, effective_error = _effective_outcome(status, error, external_refs)

    if effective_status in TERMINAL_STATUSES and job.status == effective_status:
        return ReportResult(accepted=True, updated=False, status=job.status, reason="already_reported", job_id=job_id)
    if job.status != ListingJobStatus.PROCESSING.value:
        return ReportResult(accepted=False, updated=False, status=job.status, reason="not_processing", job_id=job_id)
    if worker_id and job.claimed_by_worker_id and job.claimed_by_worker_id != worker_id:
        return ReportResult(accepted=False, updated=False, status=job.status, reason="not_claimed_by_worker", job_id=job_id)

    expected = {"status": ListingJobStatus.PROCESSING.value, "lock_version": job.lock_version}
    if effective_status == ListingJobStatus.PROCESSING.value:
        values: dict[str, Any] = {
            "claimed_at": now,
            "updated_at": now,
            "lock_version": job.lock_version + 1,
        }
    else:
        listing_id, listing_url = extract_listing_proof(external_refs)
        values = {
            "status": effective_status,
            "last_error": effective_error,
            "updated_at": now,
            "lock_version": job.lock_version + 1,
        }
        if effective_status == ListingJobStatus.COMPLETED.value:
            values.update(
                completed_at=now,
                etsy_listing_id=listing_id,
                listing_url=listing_url,
                external_refs=dict(external_refs or {}),
            )

    outcome = compare_and_swap(session, ListingJob.__table__, job_id, expected, values)
    if outcome is CasOutcome.LOST_RACE:
        return ReportResult(accepted=False, updated=False, reason="lost_race", job_id=job_id)

    if effective_status != status:
        logger.warning("Completion downgraded to failed", job_id=job_id, reason=effective_error)
    logger.info("Listing job reported", job_id=job_id, status=effective_status, worker_id=worker_id)
    return ReportResult(accepted=True, updated=True, status=effective_status, job_id=job_id)


__all__ = [
    "ReportResult",
    "claim_next",
    "report_outcome",
    "enqueue_listing_job",
    "recover_stuck_jobs",
    "normalize_report_status",
    "extract_listing_proof",
    "MISSING_PROOF_MESSAGE",
]
